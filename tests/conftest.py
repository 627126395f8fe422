"""Pytest configuration and fixtures."""

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pnl_indexer.storage.database import DatabaseManager
from pnl_indexer.storage.models import Base, TradeSide
from pnl_indexer.storage.repos import TradeDTO

WALLET = "0x1111111111111111111111111111111111111111"
OTHER_WALLET = "0x2222222222222222222222222222222222222222"
TOKEN = "0x3333333333333333333333333333333333333333"
QUOTE = "0x4200000000000000000000000000000000000006"
POOL = "0x5555555555555555555555555555555555555555"


@pytest.fixture
def wallet_address() -> str:
    """Sample wallet address for testing."""
    return WALLET


@pytest.fixture
def token_address() -> str:
    """Sample tracked token address for testing."""
    return TOKEN


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def file_db(tmp_path) -> DatabaseManager:
    """Database manager on a file-backed SQLite database with the schema created."""
    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await db.init_schema_async()
    yield db
    await db.dispose_async()


@pytest.fixture
def make_trade() -> Callable[..., TradeDTO]:
    """Factory for ledger trades with sensible defaults."""

    def _make(
        side: TradeSide | str,
        amount: str | int,
        usd: str | int,
        *,
        block: int = 100,
        tx_index: int = 0,
        log_index: int = 0,
        tx: str | None = None,
        wallet: str = WALLET,
        token: str = TOKEN,
    ) -> TradeDTO:
        token_amount = Decimal(str(amount))
        usd_value = Decimal(str(usd))
        side = TradeSide(side)
        return TradeDTO(
            wallet_address=wallet,
            token_address=token,
            side=side,
            token_amount=token_amount,
            usd_value=usd_value,
            price_usd=usd_value / token_amount if token_amount else Decimal("0"),
            block_number=block,
            tx_index=tx_index,
            log_index=log_index,
            timestamp=datetime(2026, 1, 1, tzinfo=UTC),
            transaction_hash=tx or f"0x{block:08x}{log_index:04x}{side.value.lower()}".ljust(66, "0"),
        )

    return _make


@pytest.fixture
def make_swap_record() -> Callable[..., dict[str, Any]]:
    """Factory for raw ``DEXTrades`` entries as returned by the swap feed."""

    def _make(
        *,
        block: int = 100,
        tx: str = "0x" + "aa" * 32,
        tx_from: str = WALLET,
        buy_token: str = TOKEN,
        buy_amount: str = "100",
        buy_usd: str = "50",
        buyer: str = WALLET,
        sell_token: str = QUOTE,
        sell_amount: str = "0.02",
        sell_usd: str = "50",
        seller: str = POOL,
        protocol: str = "uniswap_v3",
        time: str = "2026-01-01T00:00:00Z",
        tx_index: int | None = None,
        log_index: int | None = None,
    ) -> dict[str, Any]:
        transaction: dict[str, Any] = {"Hash": tx, "From": tx_from}
        if tx_index is not None:
            transaction["Index"] = str(tx_index)
        record: dict[str, Any] = {
            "Block": {"Number": str(block), "Time": time},
            "Transaction": transaction,
            "Trade": {
                "Buy": {
                    "Amount": buy_amount,
                    "AmountInUSD": buy_usd,
                    "Buyer": buyer,
                    "Currency": {"Symbol": "BUY", "SmartContract": buy_token, "Decimals": 18},
                },
                "Sell": {
                    "Amount": sell_amount,
                    "AmountInUSD": sell_usd,
                    "Seller": seller,
                    "Currency": {"Symbol": "SELL", "SmartContract": sell_token, "Decimals": 18},
                },
                "Dex": {"ProtocolName": protocol},
            },
        }
        if log_index is not None:
            record["Log"] = {"Index": log_index}
        return record

    return _make
