"""Provider selection strategies for the chain gateway."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from pnl_indexer.gateway.providers import ChainDataProvider, ProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProviderCall = Callable[[ChainDataProvider], Awaitable[T]]
ResultValidator = Callable[[T], bool]


def ordered_candidates(providers: Sequence[ChainDataProvider]) -> list[ChainDataProvider]:
    """Available providers by priority; every provider if none is available."""
    available = [p for p in providers if p.is_available()]
    pool = available or list(providers)
    return sorted(pool, key=lambda p: p.priority)


async def attempt(
    provider: ChainDataProvider,
    call: ProviderCall[T],
    *,
    operation: str,
    validate: ResultValidator[T] | None = None,
) -> T:
    """Run one call on one provider and update its health record.

    Raises:
        ProviderError: On any provider failure or an invalid answer.
    """
    try:
        result = await call(provider)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        provider.record_failure(e)
        if isinstance(e, ProviderError):
            raise
        raise ProviderError(f"{provider.name}: {operation} failed: {e}") from e

    if validate is not None and not validate(result):
        error = ProviderError(f"{provider.name}: {operation} returned invalid value {result!r}")
        provider.record_failure(error)
        raise error

    provider.record_success()
    return result


class ProviderStrategy(ABC):
    """Decides which providers serve a call and in what order."""

    name: str = "base"

    @abstractmethod
    async def execute(
        self,
        providers: Sequence[ChainDataProvider],
        call: ProviderCall[T],
        *,
        operation: str,
        timeout: float,
        validate: ResultValidator[T] | None = None,
    ) -> T:
        """Run ``call`` against the providers.

        Raises:
            ProviderUnavailable: If no provider produced a valid answer
                within ``timeout`` seconds.
        """


class RaceAllStrategy(ProviderStrategy):
    """Query every provider at once and keep the first valid answer."""

    name = "race"

    async def execute(
        self,
        providers: Sequence[ChainDataProvider],
        call: ProviderCall[T],
        *,
        operation: str,
        timeout: float,
        validate: ResultValidator[T] | None = None,
    ) -> T:
        candidates = ordered_candidates(providers)
        if not candidates:
            raise ProviderUnavailable(f"No providers configured for {operation}")

        tasks: dict[asyncio.Task[T], ChainDataProvider] = {
            asyncio.create_task(attempt(p, call, operation=operation, validate=validate)): p
            for p in candidates
        }
        errors: dict[str, Exception] = {}
        pending: set[asyncio.Task[T]] = set(tasks)
        try:
            async with asyncio.timeout(timeout):
                while pending:
                    done, pending = await asyncio.wait(
                        pending, return_when=asyncio.FIRST_COMPLETED
                    )
                    winner: asyncio.Task[T] | None = None
                    for task in done:
                        exc = task.exception()
                        if exc is None:
                            winner = winner or task
                            continue
                        errors[tasks[task].name] = exc  # type: ignore[assignment]
                        logger.debug(
                            "Provider %s failed %s: %s", tasks[task].name, operation, exc
                        )
                    if winner is not None:
                        return winner.result()
        except TimeoutError:
            for task in pending:
                provider = tasks[task]
                provider.record_failure(TimeoutError(f"{operation} timed out"))
                errors.setdefault(provider.name, TimeoutError(f"{operation} timed out"))
            raise ProviderUnavailable(
                f"{operation}: no provider answered within {timeout:.1f}s", errors
            ) from None
        finally:
            for task in pending:
                task.cancel()
            for task in pending:
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await task

        raise ProviderUnavailable(f"{operation}: all {len(candidates)} providers failed", errors)


class PriorityFallbackStrategy(ProviderStrategy):
    """Try providers one at a time, healthiest and highest priority first."""

    name = "priority"

    async def execute(
        self,
        providers: Sequence[ChainDataProvider],
        call: ProviderCall[T],
        *,
        operation: str,
        timeout: float,
        validate: ResultValidator[T] | None = None,
    ) -> T:
        candidates = ordered_candidates(providers)
        if not candidates:
            raise ProviderUnavailable(f"No providers configured for {operation}")

        errors: dict[str, Exception] = {}
        current: ChainDataProvider | None = None
        try:
            async with asyncio.timeout(timeout):
                for provider in candidates:
                    current = provider
                    try:
                        return await attempt(
                            provider, call, operation=operation, validate=validate
                        )
                    except ProviderError as e:
                        errors[provider.name] = e
                        logger.warning(
                            "Provider %s failed %s, falling back: %s", provider.name, operation, e
                        )
        except TimeoutError:
            if current is not None:
                current.record_failure(TimeoutError(f"{operation} timed out"))
                errors.setdefault(current.name, TimeoutError(f"{operation} timed out"))
            raise ProviderUnavailable(
                f"{operation}: no provider answered within {timeout:.1f}s", errors
            ) from None

        raise ProviderUnavailable(f"{operation}: all {len(candidates)} providers failed", errors)


def strategy_for(name: str) -> ProviderStrategy:
    """Build a strategy from its configured name."""
    if name == RaceAllStrategy.name:
        return RaceAllStrategy()
    if name == PriorityFallbackStrategy.name:
        return PriorityFallbackStrategy()
    raise ValueError(f"Unknown provider strategy: {name}")
