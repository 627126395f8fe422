"""Multi-provider chain gateway.

Routes calls across several chain data providers:
- current block number always races every provider
- metadata and balances go through the configured strategy
- token symbol/decimals degrade to ``"UNKNOWN"`` / 18 instead of failing
- token metadata is cached in Redis when a client is supplied
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from pnl_indexer.gateway.providers import (
    ChainDataProvider,
    ProviderUnavailable,
    Web3ChainProvider,
)
from pnl_indexer.gateway.strategies import (
    PriorityFallbackStrategy,
    ProviderStrategy,
    RaceAllStrategy,
    strategy_for,
)

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from pnl_indexer.config import ChainSettings

logger = logging.getLogger(__name__)

DEFAULT_SYMBOL = "UNKNOWN"
DEFAULT_DECIMALS = 18
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_METADATA_CACHE_TTL_SECONDS = 24 * 3600


@dataclass(frozen=True)
class TokenMetadata:
    """ERC-20 metadata as resolved by the gateway."""

    token_address: str
    symbol: str
    decimals: int


def _valid_block_number(value: Any) -> bool:
    return isinstance(value, int) and value > 0


def _valid_symbol(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _valid_decimals(value: Any) -> bool:
    return isinstance(value, int) and 0 <= value <= 255


def _valid_balance(value: Any) -> bool:
    return isinstance(value, Decimal) and value >= 0


class ChainGateway:
    """Uniform access to blockchain data over a pool of providers.

    The provider pool holds no per-call state and is shared by every
    indexing job.

    Example:
        ```python
        gateway = ChainGateway.from_settings(settings.chain)
        block = await gateway.get_current_block_number()
        meta = await gateway.get_token_metadata("0x...")
        await gateway.aclose()
        ```
    """

    def __init__(
        self,
        providers: Sequence[ChainDataProvider],
        *,
        strategy: ProviderStrategy | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        redis: Redis | None = None,
        metadata_cache_ttl_seconds: int = DEFAULT_METADATA_CACHE_TTL_SECONDS,
    ) -> None:
        if not providers:
            raise ValueError("ChainGateway needs at least one provider")
        self._providers = list(providers)
        self._strategy = strategy or PriorityFallbackStrategy()
        self._race = RaceAllStrategy()
        self._timeout = timeout_seconds
        self._redis = redis
        self._metadata_ttl = metadata_cache_ttl_seconds
        self._cache_prefix = "pnl_indexer:token_meta:"

    @classmethod
    def from_settings(cls, settings: ChainSettings, *, redis: Redis | None = None) -> ChainGateway:
        """Build web3 providers for every configured RPC URL, in priority order."""
        providers = [
            Web3ChainProvider(
                url,
                name=f"rpc{i}",
                priority=i,
                max_requests_per_second=settings.max_requests_per_second,
                unhealthy_after_failures=settings.unhealthy_after_failures,
                recovery_interval_seconds=settings.recovery_interval_seconds,
            )
            for i, url in enumerate(settings.rpc_urls)
        ]
        return cls(
            providers,
            strategy=strategy_for(settings.provider_strategy),
            timeout_seconds=settings.provider_timeout_seconds,
            redis=redis,
            metadata_cache_ttl_seconds=settings.metadata_cache_ttl_seconds,
        )

    @property
    def providers(self) -> list[ChainDataProvider]:
        return list(self._providers)

    @property
    def strategy(self) -> ProviderStrategy:
        return self._strategy

    async def get_current_block_number(self) -> int:
        """Latest block number, from whichever provider answers first.

        Raises:
            ProviderUnavailable: If no provider answered in time.
        """
        return await self._race.execute(
            self._providers,
            lambda p: p.get_block_number(),
            operation="block_number",
            timeout=self._timeout,
            validate=_valid_block_number,
        )

    async def get_token_symbol(self, token_address: str) -> str:
        """Token symbol, or ``"UNKNOWN"`` when no provider can tell."""
        try:
            symbol = await self._strategy.execute(
                self._providers,
                lambda p: p.get_token_symbol(token_address),
                operation="symbol",
                timeout=self._timeout,
                validate=_valid_symbol,
            )
        except ProviderUnavailable as e:
            logger.warning("Falling back to symbol %s for %s: %s", DEFAULT_SYMBOL, token_address, e)
            return DEFAULT_SYMBOL
        return symbol.strip()

    async def get_token_decimals(self, token_address: str) -> int:
        """Token decimals, or 18 when no provider can tell."""
        try:
            return await self._strategy.execute(
                self._providers,
                lambda p: p.get_token_decimals(token_address),
                operation="decimals",
                timeout=self._timeout,
                validate=_valid_decimals,
            )
        except ProviderUnavailable as e:
            logger.warning(
                "Falling back to %d decimals for %s: %s", DEFAULT_DECIMALS, token_address, e
            )
            return DEFAULT_DECIMALS

    async def get_token_metadata(self, token_address: str) -> TokenMetadata:
        """Symbol and decimals, fetched concurrently and cached when possible."""
        cache_key = f"{self._cache_prefix}{token_address.lower()}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            try:
                data = json.loads(cached)
                return TokenMetadata(
                    token_address=token_address.lower(),
                    symbol=str(data["symbol"]),
                    decimals=int(data["decimals"]),
                )
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("Ignoring malformed cached metadata for %s: %s", token_address, e)

        symbol, decimals = await asyncio.gather(
            self.get_token_symbol(token_address),
            self.get_token_decimals(token_address),
        )
        meta = TokenMetadata(token_address=token_address.lower(), symbol=symbol, decimals=decimals)
        if symbol != DEFAULT_SYMBOL:
            await self._set_cached(
                cache_key, json.dumps({"symbol": symbol, "decimals": decimals}), self._metadata_ttl
            )
        return meta

    async def get_balance(self, address: str) -> Decimal:
        """Native balance in wei.

        Raises:
            ProviderUnavailable: If every provider failed.
        """
        return await self._strategy.execute(
            self._providers,
            lambda p: p.get_balance(address),
            operation="get_balance",
            timeout=self._timeout,
            validate=_valid_balance,
        )

    async def get_token_balance(self, address: str, token_address: str) -> Decimal:
        """ERC-20 balance in the token's smallest unit.

        Raises:
            ProviderUnavailable: If every provider failed.
        """
        return await self._strategy.execute(
            self._providers,
            lambda p: p.get_token_balance(address, token_address),
            operation="balanceOf",
            timeout=self._timeout,
            validate=_valid_balance,
        )

    def provider_health(self) -> dict[str, dict[str, Any]]:
        """Health snapshot of every provider, keyed by provider name."""
        return {
            p.name: {"priority": p.priority, **p.health.as_dict()} for p in self._providers
        }

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def aclose(self) -> None:
        for provider in self._providers:
            await provider.aclose()
