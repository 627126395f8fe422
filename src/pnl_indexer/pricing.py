"""Current token price lookup.

Prices come from DexScreener (the highest-liquidity pair for the token) and
are cached for a short TTL, in Redis when a client is given and in process
otherwise. When DexScreener has no answer the last price traded in the
ledger is used instead.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import httpx

from pnl_indexer.storage.repos import TradeRepository

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from pnl_indexer.config import PricingSettings
    from pnl_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex"
PRICE_CACHE_PREFIX = "pnl_indexer:price:"


def _to_decimal(value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def best_pair_price(payload: dict[str, Any]) -> Decimal | None:
    """Pick ``priceUsd`` of the pair with the deepest USD liquidity."""
    pairs = payload.get("pairs") or []
    best: dict[str, Any] | None = None
    best_liquidity = Decimal("-1")
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        liquidity = _to_decimal((pair.get("liquidity") or {}).get("usd"))
        if liquidity > best_liquidity:
            best, best_liquidity = pair, liquidity
    if best is None:
        return None
    price = _to_decimal(best.get("priceUsd"))
    return price if price > 0 else None


class PriceService:
    """Resolve the current USD price of a token.

    Example:
        ```python
        prices = PriceService(db=db)
        price = await prices.get_current_price("0xtoken")
        await prices.close()
        ```
    """

    def __init__(
        self,
        db: DatabaseManager | None = None,
        *,
        base_url: str = DEFAULT_DEXSCREENER_URL,
        timeout_seconds: float = 3.0,
        cache_ttl_seconds: int = 300,
        redis: Redis | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._cache_ttl = cache_ttl_seconds
        self._redis = redis
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._local_cache: dict[str, tuple[Decimal, float]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: PricingSettings,
        db: DatabaseManager | None = None,
        *,
        redis: Redis | None = None,
    ) -> PriceService:
        return cls(
            db,
            base_url=settings.dexscreener_url,
            timeout_seconds=settings.timeout_seconds,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            redis=redis,
        )

    async def get_current_price(self, token_address: str) -> Decimal | None:
        """Current price in USD, or None when no source knows the token."""
        token = token_address.lower()

        cached = await self._get_cached(token)
        if cached is not None:
            return cached

        price = await self.fetch_dexscreener_price(token)
        if price is not None:
            await self._set_cached(token, price)
            return price

        if self._db is None:
            return None
        async with self._db.get_async_session() as session:
            last = await TradeRepository(session).get_latest_price(token)
        if last is not None:
            logger.info("Using last traded price %s for %s", last, token)
        return last

    async def fetch_dexscreener_price(self, token_address: str) -> Decimal | None:
        """Ask DexScreener; failures are logged and reported as None."""
        client = await self._get_client()
        try:
            response = await client.get(f"{self._base_url}/tokens/{token_address}")
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.warning("DexScreener lookup failed for %s: %s", token_address, e)
            return None
        except ValueError as e:
            logger.warning("DexScreener returned invalid JSON for %s: %s", token_address, e)
            return None
        if not isinstance(payload, dict):
            return None
        return best_pair_price(payload)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    async def _get_cached(self, token: str) -> Decimal | None:
        if self._redis is not None:
            try:
                value = await self._redis.get(PRICE_CACHE_PREFIX + token)
            except Exception as e:
                logger.warning("Price cache get failed: %s", e)
                value = None
            if value is not None:
                if isinstance(value, bytes):
                    value = value.decode()
                price = _to_decimal(value)
                if price > 0:
                    return price

        entry = self._local_cache.get(token)
        if entry is None:
            return None
        price, expires_at = entry
        if self._clock() >= expires_at:
            del self._local_cache[token]
            return None
        return price

    async def _set_cached(self, token: str, price: Decimal) -> None:
        self._local_cache[token] = (price, self._clock() + self._cache_ttl)
        if self._redis is None:
            return
        try:
            await self._redis.set(PRICE_CACHE_PREFIX + token, str(price), ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Price cache set failed: %s", e)

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
