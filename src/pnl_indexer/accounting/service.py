"""Position recompute and PnL reads backed by the trade ledger."""

from __future__ import annotations

import asyncio
import logging
import weakref
from decimal import Decimal

from pnl_indexer.accounting.fifo import calculate_unrealized_pnl, quantize_usd, replay_trades
from pnl_indexer.storage.database import DatabaseManager, retry_on_conflict
from pnl_indexer.storage.repos import PositionDTO, PositionRepository, TradeRepository

logger = logging.getLogger(__name__)


class AccountingService:
    """Recomputes positions from the full trade history.

    Writers for the same (wallet, token) are serialized with a per-key
    lock; each recompute replaces the stored position in one statement.

    Example:
        ```python
        service = AccountingService(db)
        position = await service.recompute_position("0xwallet", "0xtoken")
        unrealized = await service.calculate_unrealized_pnl(
            "0xwallet", "0xtoken", Decimal("1.25")
        )
        ```
    """

    def __init__(self, db: DatabaseManager, *, persist_retries: int = 3) -> None:
        self._db = db
        self._persist_retries = persist_retries
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, wallet_address: str, token_address: str) -> asyncio.Lock:
        key = (wallet_address.lower(), token_address.lower())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def recompute_position(self, wallet_address: str, token_address: str) -> PositionDTO:
        """Replay every trade of the pair and replace its position.

        Returns:
            The stored position.

        Raises:
            PersistenceConflict: If the write keeps conflicting.
        """

        async def _write() -> PositionDTO:
            async with self._db.get_async_session() as session:
                trades = await TradeRepository(session).list_for_wallet_token(
                    wallet_address, token_address
                )
                state = replay_trades(trades)
                position = state.to_position(wallet_address, token_address)
                stored = await PositionRepository(session).replace(position)
            if state.gaps:
                logger.info(
                    "Position %s/%s recomputed with %d over-sell gap(s)",
                    wallet_address,
                    token_address,
                    len(state.gaps),
                )
            return stored

        async with self._lock_for(wallet_address, token_address):
            position = await retry_on_conflict(
                _write,
                retries=self._persist_retries,
                description="position replace",
            )
        logger.debug(
            "Recomputed %s/%s: remaining=%s cost_basis=%s realized=%s",
            wallet_address,
            token_address,
            position.remaining_amount,
            position.cost_basis_usd,
            position.realized_pnl_usd,
        )
        return position

    async def get_position(self, wallet_address: str, token_address: str) -> PositionDTO:
        """Stored position, or an empty one when the pair never traded."""
        async with self._db.get_async_session() as session:
            position = await PositionRepository(session).get(wallet_address, token_address)
        return position or PositionDTO.empty(wallet_address, token_address)

    async def calculate_unrealized_pnl(
        self, wallet_address: str, token_address: str, current_price: Decimal
    ) -> Decimal:
        """Unrealized PnL of the stored position; does not modify anything."""
        position = await self.get_position(wallet_address, token_address)
        return calculate_unrealized_pnl(position, current_price)

    @staticmethod
    def total_pnl(position: PositionDTO, current_price: Decimal | None) -> Decimal:
        """Realized plus unrealized PnL; realized only when no price is known."""
        if current_price is None:
            return quantize_usd(position.realized_pnl_usd)
        return quantize_usd(
            position.realized_pnl_usd + calculate_unrealized_pnl(position, current_price)
        )
