"""Chain data providers with per-provider health tracking.

This module provides the provider abstraction used by the gateway:
- A common async interface for block number, ERC-20 metadata and balances
- Health records updated on every call (consecutive failures, last error)
- Automatic re-admission of unhealthy providers after a recovery interval
- A web3-backed implementation with PoA middleware and rate limiting
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_UNHEALTHY_AFTER_FAILURES = 3
DEFAULT_RECOVERY_INTERVAL_SECONDS = 60.0

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "string"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]

# Some legacy tokens (MKR-style) return bytes32 from symbol().
ERC20_BYTES32_SYMBOL_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [],
        "name": "symbol",
        "outputs": [{"name": "", "type": "bytes32"}],
        "type": "function",
    },
]


class GatewayError(Exception):
    """Base exception for chain gateway errors."""


class ProviderError(GatewayError):
    """Raised when a single provider fails a call."""


class ProviderUnavailable(GatewayError):
    """Raised when every provider failed a call; callers should retry later."""

    def __init__(self, message: str, errors: dict[str, Exception] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass
class ProviderHealth:
    """Health record of one provider."""

    healthy: bool = True
    consecutive_failures: int = 0
    total_calls: int = 0
    total_failures: int = 0
    last_error: str | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    unhealthy_since: float | None = None  # monotonic

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("unhealthy_since")
        return data


class ChainDataProvider(ABC):
    """A blockchain data endpoint the gateway can route calls to."""

    def __init__(
        self,
        name: str,
        *,
        priority: int = 0,
        unhealthy_after_failures: int = DEFAULT_UNHEALTHY_AFTER_FAILURES,
        recovery_interval_seconds: float = DEFAULT_RECOVERY_INTERVAL_SECONDS,
    ) -> None:
        self.name = name
        self.priority = priority
        self.health = ProviderHealth()
        self._unhealthy_after = unhealthy_after_failures
        self._recovery_interval = recovery_interval_seconds

    def is_available(self) -> bool:
        """Healthy, or unhealthy long enough to deserve another try."""
        if self.health.healthy:
            return True
        since = self.health.unhealthy_since or 0.0
        return time.monotonic() - since >= self._recovery_interval

    def record_success(self) -> None:
        h = self.health
        h.total_calls += 1
        h.consecutive_failures = 0
        h.last_success_at = datetime.now(UTC)
        if not h.healthy:
            logger.info("Provider %s recovered", self.name)
        h.healthy = True
        h.unhealthy_since = None

    def record_failure(self, error: BaseException) -> None:
        h = self.health
        h.total_calls += 1
        h.total_failures += 1
        h.consecutive_failures += 1
        h.last_error = str(error) or type(error).__name__
        h.last_failure_at = datetime.now(UTC)
        if h.consecutive_failures >= self._unhealthy_after:
            if h.healthy:
                logger.warning(
                    "Provider %s marked unhealthy after %d consecutive failures: %s",
                    self.name,
                    h.consecutive_failures,
                    h.last_error,
                )
            h.healthy = False
            h.unhealthy_since = time.monotonic()

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def get_token_symbol(self, token_address: str) -> str: ...

    @abstractmethod
    async def get_token_decimals(self, token_address: str) -> int: ...

    @abstractmethod
    async def get_balance(self, address: str) -> Decimal: ...

    @abstractmethod
    async def get_token_balance(self, address: str, token_address: str) -> Decimal: ...

    async def aclose(self) -> None:
        """Release network resources."""
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


class Web3ChainProvider(ChainDataProvider):
    """JSON-RPC provider backed by ``web3.AsyncWeb3``.

    Example:
        ```python
        provider = Web3ChainProvider("https://mainnet.base.org", priority=0)
        block = await provider.get_block_number()
        symbol = await provider.get_token_symbol("0x...")
        await provider.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        name: str | None = None,
        priority: int = 0,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        unhealthy_after_failures: int = DEFAULT_UNHEALTHY_AFTER_FAILURES,
        recovery_interval_seconds: float = DEFAULT_RECOVERY_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(
            name or rpc_url,
            priority=priority,
            unhealthy_after_failures=unhealthy_after_failures,
            recovery_interval_seconds=recovery_interval_seconds,
        )
        self._rpc_url = rpc_url
        self._w3 = self._new_web3_client(rpc_url)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3[AsyncHTTPProvider]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    def _contract(self, token_address: str, abi: list[dict[str, Any]] = ERC20_ABI) -> Any:
        return self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=abi,
        )

    async def _guarded(self, description: str, awaitable: Any) -> Any:
        await self._rate_limiter.acquire()
        try:
            return await awaitable
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            raise ProviderError(f"{self.name}: {description} failed: {e}") from e

    async def get_block_number(self) -> int:
        return int(await self._guarded("block_number", self._w3.eth.block_number))

    async def get_token_symbol(self, token_address: str) -> str:
        try:
            symbol = await self._guarded(
                "symbol", self._contract(token_address).functions.symbol().call()
            )
        except ProviderError:
            raw = await self._guarded(
                "symbol(bytes32)",
                self._contract(token_address, ERC20_BYTES32_SYMBOL_ABI).functions.symbol().call(),
            )
            symbol = bytes(raw).rstrip(b"\x00").decode("utf-8", errors="ignore")
        return str(symbol)

    async def get_token_decimals(self, token_address: str) -> int:
        return int(
            await self._guarded(
                "decimals", self._contract(token_address).functions.decimals().call()
            )
        )

    async def get_balance(self, address: str) -> Decimal:
        balance = await self._guarded(
            "get_balance", self._w3.eth.get_balance(AsyncWeb3.to_checksum_address(address))
        )
        return Decimal(balance)

    async def get_token_balance(self, address: str, token_address: str) -> Decimal:
        balance = await self._guarded(
            "balanceOf",
            self._contract(token_address)
            .functions.balanceOf(AsyncWeb3.to_checksum_address(address))
            .call(block_identifier="latest"),
        )
        return Decimal(int(balance))

    async def aclose(self) -> None:
        """Close the async HTTP provider session."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session (%s): %s", self.name, e)
