"""Repository pattern implementations for data access.

This module provides data access abstractions for tracked tokens, the
trade ledger, derived positions, wallet sync cursors, contests and
contest registrations.
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from pnl_indexer.storage.models import (
    ContestModel,
    PositionModel,
    RegistrationModel,
    RegistrationStatus,
    TrackedTokenModel,
    TradeModel,
    TradeSide,
    WalletModel,
    WalletTokenCursorModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def _insert_for(session: AsyncSession, model: type[Any]) -> Any:
    """Dialect-specific INSERT supporting ON CONFLICT clauses."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class TrackedTokenDTO:
    """Data transfer object for tracked tokens."""

    token_address: str
    symbol: str = "UNKNOWN"
    decimals: int = 18
    genesis_block: int | None = None
    last_synced_block: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TrackedTokenModel) -> TrackedTokenDTO:
        return cls(
            token_address=model.token_address,
            symbol=model.symbol,
            decimals=model.decimals,
            genesis_block=model.genesis_block,
            last_synced_block=model.last_synced_block,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class TradeDTO:
    """Data transfer object for ledger trades."""

    wallet_address: str
    token_address: str
    side: TradeSide
    token_amount: Decimal
    usd_value: Decimal
    price_usd: Decimal
    block_number: int
    timestamp: datetime
    transaction_hash: str
    tx_index: int = 0
    log_index: int = 0
    source: str = "bitquery"
    id: int | None = None
    created_at: datetime | None = None

    @property
    def dedup_key(self) -> tuple[str, str, str, str]:
        """Uniqueness key of the ledger."""
        return (
            self.transaction_hash.lower(),
            self.token_address.lower(),
            self.wallet_address.lower(),
            TradeSide(self.side).value,
        )

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            id=model.id,
            wallet_address=model.wallet_address,
            token_address=model.token_address,
            side=TradeSide(model.side),
            token_amount=model.token_amount,
            usd_value=model.usd_value,
            price_usd=model.price_usd,
            block_number=model.block_number,
            tx_index=model.tx_index,
            log_index=model.log_index,
            timestamp=model.timestamp,
            transaction_hash=model.transaction_hash,
            source=model.source,
            created_at=model.created_at,
        )


@dataclass
class PositionDTO:
    """Data transfer object for derived positions."""

    wallet_address: str
    token_address: str
    remaining_amount: Decimal
    cost_basis_usd: Decimal
    realized_pnl_usd: Decimal
    trade_count: int = 0
    updated_at: datetime | None = None

    @classmethod
    def empty(cls, wallet_address: str, token_address: str) -> PositionDTO:
        """Position of a wallet that never traded the token."""
        return cls(
            wallet_address=wallet_address.lower(),
            token_address=token_address.lower(),
            remaining_amount=Decimal("0"),
            cost_basis_usd=Decimal("0"),
            realized_pnl_usd=Decimal("0"),
        )

    @classmethod
    def from_model(cls, model: PositionModel) -> PositionDTO:
        return cls(
            wallet_address=model.wallet_address,
            token_address=model.token_address,
            remaining_amount=model.remaining_amount,
            cost_basis_usd=model.cost_basis_usd,
            realized_pnl_usd=model.realized_pnl_usd,
            trade_count=model.trade_count,
            updated_at=model.updated_at,
        )


@dataclass
class WalletDTO:
    """Data transfer object for wallet sync cursors."""

    wallet_address: str
    last_synced_block: int | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletModel) -> WalletDTO:
        return cls(
            wallet_address=model.wallet_address,
            last_synced_block=model.last_synced_block,
            updated_at=model.updated_at,
        )


@dataclass
class ContestDTO:
    """Data transfer object for contests."""

    id: int
    token_address: str
    name: str = ""
    start_at: datetime | None = None
    end_at: datetime | None = None

    @classmethod
    def from_model(cls, model: ContestModel) -> ContestDTO:
        return cls(
            id=model.id,
            token_address=model.token_address,
            name=model.name,
            start_at=model.start_at,
            end_at=model.end_at,
        )


@dataclass
class RegistrationDTO:
    """Data transfer object for contest registrations."""

    id: int
    contest_id: int
    wallet_address: str
    status: RegistrationStatus
    indexing_started_at: datetime | None = None
    indexed_at: datetime | None = None
    pnl_calculated_at: datetime | None = None
    current_pnl: Decimal | None = None
    last_error: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: RegistrationModel) -> RegistrationDTO:
        return cls(
            id=model.id,
            contest_id=model.contest_id,
            wallet_address=model.wallet_address,
            status=RegistrationStatus(model.status),
            indexing_started_at=model.indexing_started_at,
            indexed_at=model.indexed_at,
            pnl_calculated_at=model.pnl_calculated_at,
            current_pnl=model.current_pnl,
            last_error=model.last_error,
            updated_at=model.updated_at,
        )


# ============================================================================
# Repositories
# ============================================================================


class TrackedTokenRepository:
    """Repository for tracked tokens."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, token_address: str) -> TrackedTokenDTO | None:
        result = await self.session.execute(
            select(TrackedTokenModel).where(
                TrackedTokenModel.token_address == token_address.lower()
            ).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return TrackedTokenDTO.from_model(model) if model else None

    async def list_all(self) -> list[TrackedTokenDTO]:
        result = await self.session.execute(
            select(TrackedTokenModel).order_by(TrackedTokenModel.token_address)
        )
        return [TrackedTokenDTO.from_model(m) for m in result.scalars().all()]

    async def upsert(self, dto: TrackedTokenDTO) -> TrackedTokenDTO:
        """Register a token or refresh its metadata.

        A genesis block already on record is kept when the new value is None.
        The sync cursor is never touched here.
        """
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, TrackedTokenModel).values(
            token_address=dto.token_address.lower(),
            symbol=dto.symbol,
            decimals=dto.decimals,
            genesis_block=dto.genesis_block,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["token_address"],
            set_={
                "symbol": stmt.excluded.symbol,
                "decimals": stmt.excluded.decimals,
                "genesis_block": func.coalesce(
                    stmt.excluded.genesis_block, TrackedTokenModel.genesis_block
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        stored = await self.get(dto.token_address)
        if stored is None:
            raise RuntimeError(f"Tracked token {dto.token_address} vanished after upsert")
        return stored

    async def advance_sync_cursor(self, token_address: str, block_number: int) -> None:
        """Move the token-wide cursor forward (never backwards)."""
        await self.session.execute(
            update(TrackedTokenModel)
            .where(TrackedTokenModel.token_address == token_address.lower())
            .where(
                or_(
                    TrackedTokenModel.last_synced_block.is_(None),
                    TrackedTokenModel.last_synced_block < block_number,
                )
            )
            .values(last_synced_block=block_number, updated_at=datetime.now(UTC))
        )
        await self.session.flush()


class TradeRepository:
    """Repository for the append-only trade ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    @staticmethod
    def _values(dto: TradeDTO) -> dict[str, Any]:
        return {
            "wallet_address": dto.wallet_address.lower(),
            "token_address": dto.token_address.lower(),
            "side": TradeSide(dto.side).value,
            "token_amount": dto.token_amount,
            "usd_value": dto.usd_value,
            "price_usd": dto.price_usd,
            "block_number": dto.block_number,
            "tx_index": dto.tx_index,
            "log_index": dto.log_index,
            "timestamp": dto.timestamp,
            "transaction_hash": dto.transaction_hash.lower(),
            "source": dto.source,
            "created_at": datetime.now(UTC),
        }

    async def insert_ignore(self, dto: TradeDTO) -> bool:
        """Insert a trade unless its dedup key already exists.

        Returns:
            True if a new row was written, False for a duplicate.
        """
        stmt = _insert_for(self.session, TradeModel).values(**self._values(dto))
        stmt = stmt.on_conflict_do_nothing(
            index_elements=["transaction_hash", "token_address", "wallet_address", "side"]
        )
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def insert_ignore_many(self, dtos: list[TradeDTO]) -> int:
        """Insert trades, ignoring duplicates.

        Returns:
            Number of newly written rows.
        """
        inserted = 0
        for dto in dtos:
            if await self.insert_ignore(dto):
                inserted += 1
        await self.session.flush()
        if inserted < len(dtos):
            logger.debug("Ignored %d duplicate trades", len(dtos) - inserted)
        return inserted

    async def list_for_wallet_token(self, wallet_address: str, token_address: str) -> list[TradeDTO]:
        """Full trade history of a wallet for a token in replay order."""
        result = await self.session.execute(
            select(TradeModel)
            .where(TradeModel.wallet_address == wallet_address.lower())
            .where(TradeModel.token_address == token_address.lower())
            .order_by(
                TradeModel.block_number.asc(),
                TradeModel.tx_index.asc(),
                TradeModel.log_index.asc(),
                TradeModel.transaction_hash.asc(),
                TradeModel.id.asc(),
            )
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def count_for_wallet_token(self, wallet_address: str, token_address: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(TradeModel)
            .where(TradeModel.wallet_address == wallet_address.lower())
            .where(TradeModel.token_address == token_address.lower())
        )
        return int(result.scalar_one())

    async def list_wallets_for_token(self, token_address: str) -> list[str]:
        result = await self.session.execute(
            select(TradeModel.wallet_address)
            .where(TradeModel.token_address == token_address.lower())
            .distinct()
            .order_by(TradeModel.wallet_address)
        )
        return list(result.scalars().all())

    async def get_latest_price(self, token_address: str) -> Decimal | None:
        """Price of the most recent priced trade of a token."""
        result = await self.session.execute(
            select(TradeModel.price_usd)
            .where(TradeModel.token_address == token_address.lower())
            .where(TradeModel.price_usd > 0)
            .order_by(
                TradeModel.block_number.desc(),
                TradeModel.tx_index.desc(),
                TradeModel.log_index.desc(),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()


class PositionRepository:
    """Repository for derived positions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str, token_address: str) -> PositionDTO | None:
        result = await self.session.execute(
            select(PositionModel)
            .where(PositionModel.wallet_address == wallet_address.lower())
            .where(PositionModel.token_address == token_address.lower())
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return PositionDTO.from_model(model) if model else None

    async def replace(self, dto: PositionDTO) -> PositionDTO:
        """Overwrite the whole position row in a single statement."""
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, PositionModel).values(
            wallet_address=dto.wallet_address.lower(),
            token_address=dto.token_address.lower(),
            remaining_amount=dto.remaining_amount,
            cost_basis_usd=dto.cost_basis_usd,
            realized_pnl_usd=dto.realized_pnl_usd,
            trade_count=dto.trade_count,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "token_address"],
            set_={
                "remaining_amount": stmt.excluded.remaining_amount,
                "cost_basis_usd": stmt.excluded.cost_basis_usd,
                "realized_pnl_usd": stmt.excluded.realized_pnl_usd,
                "trade_count": stmt.excluded.trade_count,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        dto.updated_at = now
        return dto

    async def list_by_wallet(self, wallet_address: str) -> list[PositionDTO]:
        result = await self.session.execute(
            select(PositionModel)
            .where(PositionModel.wallet_address == wallet_address.lower())
            .order_by(PositionModel.token_address)
        )
        return [PositionDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_token(self, token_address: str, *, limit: int = 100) -> list[PositionDTO]:
        result = await self.session.execute(
            select(PositionModel)
            .where(PositionModel.token_address == token_address.lower())
            .order_by(PositionModel.realized_pnl_usd.desc(), PositionModel.wallet_address)
            .limit(limit)
        )
        return [PositionDTO.from_model(m) for m in result.scalars().all()]


class WalletRepository:
    """Repository for wallet sync cursors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, wallet_address: str) -> WalletDTO | None:
        result = await self.session.execute(
            select(WalletModel).where(WalletModel.wallet_address == wallet_address.lower())
        )
        model = result.scalar_one_or_none()
        return WalletDTO.from_model(model) if model else None

    async def ensure(self, wallet_address: str) -> None:
        """Create the wallet row if missing."""
        now = datetime.now(UTC)
        stmt = _insert_for(self.session, WalletModel).values(
            wallet_address=wallet_address.lower(),
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["wallet_address"])
        await self.session.execute(stmt)

    async def advance_last_synced_block(self, wallet_address: str, block_number: int) -> None:
        """Move the wallet cursor forward (never backwards)."""
        await self.ensure(wallet_address)
        await self.session.execute(
            update(WalletModel)
            .where(WalletModel.wallet_address == wallet_address.lower())
            .where(
                or_(
                    WalletModel.last_synced_block.is_(None),
                    WalletModel.last_synced_block < block_number,
                )
            )
            .values(last_synced_block=block_number, updated_at=datetime.now(UTC))
        )
        await self.session.flush()

    async def get_token_cursor(self, wallet_address: str, token_address: str) -> int | None:
        """Last block fully synced for this wallet on this token."""
        result = await self.session.execute(
            select(WalletTokenCursorModel.last_synced_block).where(
                WalletTokenCursorModel.wallet_address == wallet_address.lower(),
                WalletTokenCursorModel.token_address == token_address.lower(),
            )
        )
        return result.scalar_one_or_none()

    async def advance_token_cursor(
        self, wallet_address: str, token_address: str, block_number: int
    ) -> None:
        """Move the (wallet, token) cursor forward, and the wallet cursor with it."""
        stmt = _insert_for(self.session, WalletTokenCursorModel).values(
            wallet_address=wallet_address.lower(),
            token_address=token_address.lower(),
            last_synced_block=block_number,
            updated_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "token_address"],
            set_={
                "last_synced_block": stmt.excluded.last_synced_block,
                "updated_at": stmt.excluded.updated_at,
            },
            where=WalletTokenCursorModel.last_synced_block < stmt.excluded.last_synced_block,
        )
        await self.session.execute(stmt)
        await self.advance_last_synced_block(wallet_address, block_number)


class ContestRepository:
    """Read access to contests."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contest_id: int) -> ContestDTO | None:
        result = await self.session.execute(
            select(ContestModel).where(ContestModel.id == contest_id)
        )
        model = result.scalar_one_or_none()
        return ContestDTO.from_model(model) if model else None


class RegistrationRepository:
    """Repository for contest registrations and their indexing status."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, registration_id: int) -> RegistrationDTO | None:
        result = await self.session.execute(
            select(RegistrationModel)
            .where(RegistrationModel.id == registration_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return RegistrationDTO.from_model(model) if model else None

    async def list_by_contest(self, contest_id: int) -> list[RegistrationDTO]:
        result = await self.session.execute(
            select(RegistrationModel)
            .where(RegistrationModel.contest_id == contest_id)
            .order_by(RegistrationModel.id)
            .execution_options(populate_existing=True)
        )
        return [RegistrationDTO.from_model(m) for m in result.scalars().all()]

    async def _transition(
        self,
        registration_id: int,
        *,
        from_states: tuple[RegistrationStatus, ...],
        values: dict[str, Any],
    ) -> bool:
        stmt = (
            update(RegistrationModel)
            .where(RegistrationModel.id == registration_id)
            .where(RegistrationModel.status.in_([s.value for s in from_states]))
        )
        result = await self.session.execute(stmt.values(**values, updated_at=datetime.now(UTC)))
        await self.session.flush()
        return bool(result.rowcount)

    async def mark_indexing(self, registration_id: int) -> bool:
        """PENDING/FAILED/INDEXING -> INDEXING and restart the indexing clock.

        An INDEXED registration is left as it is; a re-sync refreshes its
        PnL through :meth:`record_pnl` instead.
        """
        return await self._transition(
            registration_id,
            from_states=(
                RegistrationStatus.PENDING,
                RegistrationStatus.FAILED,
                RegistrationStatus.INDEXING,
            ),
            values={
                "status": RegistrationStatus.INDEXING.value,
                "indexing_started_at": datetime.now(UTC),
                "last_error": None,
            },
        )

    async def mark_indexed(self, registration_id: int, *, current_pnl: Decimal) -> bool:
        """INDEXING -> INDEXED with the freshly computed PnL."""
        now = datetime.now(UTC)
        return await self._transition(
            registration_id,
            from_states=(RegistrationStatus.INDEXING,),
            values={
                "status": RegistrationStatus.INDEXED.value,
                "indexed_at": now,
                "pnl_calculated_at": now,
                "current_pnl": current_pnl,
                "last_error": None,
            },
        )

    async def update_pnl(self, registration_id: int, *, current_pnl: Decimal) -> bool:
        """Refresh the PnL of an already indexed registration."""
        return await self._transition(
            registration_id,
            from_states=(RegistrationStatus.INDEXED,),
            values={"current_pnl": current_pnl, "pnl_calculated_at": datetime.now(UTC)},
        )

    async def record_pnl(self, registration_id: int, *, current_pnl: Decimal) -> bool:
        """Finish an indexing pass: mark INDEXING as INDEXED, or refresh an INDEXED PnL."""
        if await self.mark_indexed(registration_id, current_pnl=current_pnl):
            return True
        return await self.update_pnl(registration_id, current_pnl=current_pnl)

    async def fail_stale(
        self,
        older_than: datetime,
        error: str,
        *,
        exclude_ids: Collection[int] = (),
    ) -> int:
        """Mark INDEXING registrations that started before ``older_than`` as FAILED.

        A last_error already on record is kept.

        Returns:
            Number of registrations marked FAILED.
        """
        started = func.coalesce(RegistrationModel.indexing_started_at, RegistrationModel.updated_at)
        stmt = (
            update(RegistrationModel)
            .where(RegistrationModel.status == RegistrationStatus.INDEXING.value)
            .where(started < older_than)
        )
        if exclude_ids:
            stmt = stmt.where(RegistrationModel.id.not_in(list(exclude_ids)))
        result = await self.session.execute(
            stmt.values(
                status=RegistrationStatus.FAILED.value,
                last_error=func.coalesce(RegistrationModel.last_error, error[:2000]),
                updated_at=datetime.now(UTC),
            ).execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return int(result.rowcount or 0)

    async def record_error(self, registration_id: int, error: str) -> bool:
        """Keep the registration INDEXING but remember why the last attempt failed."""
        return await self._transition(
            registration_id,
            from_states=(RegistrationStatus.INDEXING,),
            values={"last_error": error[:2000]},
        )

    async def mark_failed(self, registration_id: int, error: str) -> bool:
        """INDEXING -> FAILED."""
        return await self._transition(
            registration_id,
            from_states=(RegistrationStatus.INDEXING,),
            values={"status": RegistrationStatus.FAILED.value, "last_error": error[:2000]},
        )
