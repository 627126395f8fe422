"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked tokens, the
append-only trade ledger, derived positions, wallet sync cursors and
the contest registrations the indexer reports into.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Column precisions shared with the accounting engine.
TOKEN_AMOUNT_SCALE = 18
USD_SCALE = 12
PRICE_SCALE = 18


class TradeSide(str, Enum):
    """Direction of a trade from the wallet's point of view."""

    BUY = "BUY"
    SELL = "SELL"


class RegistrationStatus(str, Enum):
    """Indexing lifecycle of a contest registration."""

    PENDING = "PENDING"
    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TrackedTokenModel(Base):
    """A token whose swaps are indexed."""

    __tablename__ = "tracked_tokens"

    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    symbol: Mapped[str] = mapped_column(String(50), nullable=False, default="UNKNOWN")
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    genesis_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    last_synced_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class TradeModel(Base):
    """Normalized swap leg attributed to one wallet (append-only ledger)."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)

    token_amount: Mapped[Decimal] = mapped_column(Numeric(48, TOKEN_AMOUNT_SCALE), nullable=False)
    usd_value: Mapped[Decimal] = mapped_column(Numeric(38, USD_SCALE), nullable=False)
    price_usd: Mapped[Decimal] = mapped_column(Numeric(38, PRICE_SCALE), nullable=False)

    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tx_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    transaction_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="bitquery")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_hash",
            "token_address",
            "wallet_address",
            "side",
            name="uq_trades_dedup",
        ),
        Index("idx_trades_wallet_token_block", "wallet_address", "token_address", "block_number"),
        Index("idx_trades_token_block", "token_address", "block_number"),
    )


class PositionModel(Base):
    """Derived FIFO position for one (wallet, token) pair."""

    __tablename__ = "positions"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)

    remaining_amount: Mapped[Decimal] = mapped_column(
        Numeric(48, TOKEN_AMOUNT_SCALE), nullable=False
    )
    cost_basis_usd: Mapped[Decimal] = mapped_column(Numeric(38, USD_SCALE), nullable=False)
    realized_pnl_usd: Mapped[Decimal] = mapped_column(Numeric(38, USD_SCALE), nullable=False)
    trade_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_positions_token_realized", "token_address", "realized_pnl_usd"),)


class WalletModel(Base):
    """Per-wallet sync cursor."""

    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    last_synced_block: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class WalletTokenCursorModel(Base):
    """Sync cursor of one wallet on one token."""

    __tablename__ = "wallet_token_cursors"

    wallet_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    token_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )


class ContestModel(Base):
    """Time-boxed trading contest on one token."""

    __tablename__ = "contests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    token_address: Mapped[str] = mapped_column(String(42), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    start_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_contests_token", "token_address"),)


class RegistrationModel(Base):
    """A wallet's entry in a contest, with indexing status and PnL."""

    __tablename__ = "contest_registrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contest_id: Mapped[int] = mapped_column(Integer, nullable=False)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    indexing_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    indexed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    pnl_calculated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    current_pnl: Mapped[Decimal | None] = mapped_column(Numeric(38, USD_SCALE), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("contest_id", "wallet_address", name="uq_registration_contest_wallet"),
        Index("idx_registrations_contest_pnl", "contest_id", "current_pnl"),
    )
