"""Tests for current price lookup."""

from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from pnl_indexer.pricing import PRICE_CACHE_PREFIX, PriceService, best_pair_price
from pnl_indexer.storage.database import DatabaseManager
from pnl_indexer.storage.repos import TradeRepository

TOKEN = "0x3333333333333333333333333333333333333333"


def _pairs(*pairs: tuple[str, str]) -> dict:
    return {"pairs": [{"priceUsd": price, "liquidity": {"usd": liq}} for price, liq in pairs]}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def get(self, key: str) -> bytes | None:
        value = self.store.get(key)
        return value.encode() if value is not None else None

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.store[key] = value


def _service(handler, **kwargs) -> PriceService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PriceService(base_url="https://dex.test/latest/dex", client=client, **kwargs)


class TestBestPairPrice:
    def test_deepest_pair_wins(self) -> None:
        payload = _pairs(("0.5", "1000"), ("0.7", "90000"), ("0.9", "10"))
        assert best_pair_price(payload) == Decimal("0.7")

    def test_no_pairs(self) -> None:
        assert best_pair_price({"pairs": None}) is None

    def test_zero_price_is_no_price(self) -> None:
        assert best_pair_price(_pairs(("0", "1000"))) is None


class TestPriceService:
    @pytest.mark.asyncio
    async def test_fetches_from_dexscreener(self) -> None:
        requested: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requested.append(str(request.url))
            return httpx.Response(200, json=_pairs(("1.25", "5000")))

        prices = _service(handler)

        assert await prices.get_current_price(TOKEN) == Decimal("1.25")
        assert requested == [f"https://dex.test/latest/dex/tokens/{TOKEN}"]

    @pytest.mark.asyncio
    async def test_cached_until_ttl(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(200, json=_pairs(("2", "5000")))

        clock = FakeClock()
        prices = _service(handler, cache_ttl_seconds=60, clock=clock)

        await prices.get_current_price(TOKEN)
        clock.now = 30
        await prices.get_current_price(TOKEN)
        assert calls == 1

        clock.now = 61
        await prices.get_current_price(TOKEN)
        assert calls == 2

    @pytest.mark.asyncio
    async def test_redis_cache_is_shared(self) -> None:
        redis = FakeRedis()
        redis.store[PRICE_CACHE_PREFIX + TOKEN] = "3.5"

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("should not hit DexScreener")

        prices = _service(handler, redis=redis)

        assert await prices.get_current_price(TOKEN) == Decimal("3.5")

    @pytest.mark.asyncio
    async def test_falls_back_to_last_traded_price(self, async_engine, make_trade) -> None:
        db = DatabaseManager.from_engine(async_engine)
        async with db.get_async_session() as session:
            await TradeRepository(session).insert_ignore_many(
                [make_trade("BUY", 4, 2, block=1), make_trade("SELL", 4, 3, block=2)]
            )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503)

        prices = _service(handler, db=db)

        assert await prices.get_current_price(TOKEN) == Decimal("0.75")

    @pytest.mark.asyncio
    async def test_unknown_everywhere(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"pairs": []})

        assert await _service(handler).get_current_price(TOKEN) is None

    @pytest.mark.asyncio
    async def test_invalid_json_is_no_price(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="not json")

        assert await _service(handler).fetch_dexscreener_price(TOKEN) is None

    @pytest.mark.asyncio
    async def test_broken_redis_is_ignored(self) -> None:
        redis = AsyncMock()
        redis.get.side_effect = ConnectionError("redis down")
        redis.set.side_effect = ConnectionError("redis down")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_pairs(("4", "5000")))

        prices = _service(handler, redis=redis)

        assert await prices.get_current_price(TOKEN) == Decimal("4")
        redis.set.assert_awaited_once()
