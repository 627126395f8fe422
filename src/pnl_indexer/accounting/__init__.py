"""FIFO accounting - position replay and PnL."""

from pnl_indexer.accounting.fifo import (
    Lot,
    OverSellDataGap,
    PositionState,
    calculate_unrealized_pnl,
    replay_key,
    replay_trades,
)
from pnl_indexer.accounting.service import AccountingService

__all__ = [
    "AccountingService",
    "Lot",
    "OverSellDataGap",
    "PositionState",
    "calculate_unrealized_pnl",
    "replay_key",
    "replay_trades",
]
