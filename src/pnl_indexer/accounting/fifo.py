"""FIFO cost-basis engine.

Replays one wallet's trades for one token, oldest first, against a queue
of acquisition lots:

- BUY appends a lot at ``usd_value / token_amount`` per unit
- SELL consumes lots from the front; each consumed unit realizes
  ``sale price per unit - lot unit cost``
- a SELL larger than every open lot (history not fully ingested yet) is a
  zero-cost disposal for the excess; its proceeds are realized in full and
  the gap is reported, never raised

The engine is pure: the same set of trades always yields the same
position, whatever order the trades arrive in.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Context, Decimal, localcontext

from pnl_indexer.storage.models import TOKEN_AMOUNT_SCALE, USD_SCALE, TradeSide
from pnl_indexer.storage.repos import PositionDTO, TradeDTO

logger = logging.getLogger(__name__)

DECIMAL_CONTEXT = Context(prec=50, rounding=ROUND_HALF_EVEN)

ZERO = Decimal("0")
_AMOUNT_QUANTUM = Decimal(1).scaleb(-TOKEN_AMOUNT_SCALE)
_USD_QUANTUM = Decimal(1).scaleb(-USD_SCALE)

ReplayKey = tuple[int, int, int, str, str, Decimal, Decimal]


@dataclass
class Lot:
    """Open acquisition lot."""

    amount: Decimal
    unit_cost_usd: Decimal
    order_key: ReplayKey

    @property
    def cost_usd(self) -> Decimal:
        return self.amount * self.unit_cost_usd


@dataclass(frozen=True)
class OverSellDataGap:
    """A SELL that disposed of more tokens than the known lots held."""

    transaction_hash: str
    block_number: int
    excess_amount: Decimal
    proceeds_usd: Decimal


@dataclass
class PositionState:
    """Outcome of a full replay."""

    remaining_amount: Decimal = ZERO
    cost_basis_usd: Decimal = ZERO
    realized_pnl_usd: Decimal = ZERO
    trade_count: int = 0
    lots: tuple[Lot, ...] = ()
    gaps: tuple[OverSellDataGap, ...] = field(default_factory=tuple)

    def to_position(self, wallet_address: str, token_address: str) -> PositionDTO:
        """Quantize to the storage scale."""
        return PositionDTO(
            wallet_address=wallet_address.lower(),
            token_address=token_address.lower(),
            remaining_amount=quantize_amount(self.remaining_amount),
            cost_basis_usd=quantize_usd(self.cost_basis_usd),
            realized_pnl_usd=quantize_usd(self.realized_pnl_usd),
            trade_count=self.trade_count,
        )


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(_AMOUNT_QUANTUM, context=DECIMAL_CONTEXT)


def quantize_usd(value: Decimal) -> Decimal:
    return value.quantize(_USD_QUANTUM, context=DECIMAL_CONTEXT)


def replay_key(trade: TradeDTO) -> ReplayKey:
    """Chronological sort key; ties fall back to trade content for determinism."""
    return (
        int(trade.block_number),
        int(trade.tx_index),
        int(trade.log_index),
        trade.transaction_hash.lower(),
        TradeSide(trade.side).value,
        Decimal(trade.token_amount),
        Decimal(trade.usd_value),
    )


def replay_trades(trades: Iterable[TradeDTO]) -> PositionState:
    """Replay trades in chronological order and derive the position.

    Args:
        trades: Every trade of one wallet for one token, in any order.

    Returns:
        The resulting position state, including open lots and any
        over-sell gaps encountered.
    """
    ordered = sorted(trades, key=replay_key)
    lots: deque[Lot] = deque()
    gaps: list[OverSellDataGap] = []
    realized = ZERO
    processed = 0

    with localcontext(DECIMAL_CONTEXT):
        for trade in ordered:
            amount = Decimal(trade.token_amount)
            usd_value = Decimal(trade.usd_value)
            if amount <= ZERO:
                logger.debug("Skipping zero-amount trade %s", trade.transaction_hash)
                continue
            processed += 1
            unit_value = usd_value / amount

            if TradeSide(trade.side) == TradeSide.BUY:
                lots.append(Lot(amount=amount, unit_cost_usd=unit_value, order_key=replay_key(trade)))
                continue

            to_sell = amount
            while to_sell > ZERO and lots:
                lot = lots[0]
                take = min(to_sell, lot.amount)
                realized += take * (unit_value - lot.unit_cost_usd)
                lot.amount -= take
                to_sell -= take
                if lot.amount <= ZERO:
                    lots.popleft()

            if to_sell > ZERO:
                proceeds = to_sell * unit_value
                realized += proceeds
                gap = OverSellDataGap(
                    transaction_hash=trade.transaction_hash,
                    block_number=trade.block_number,
                    excess_amount=to_sell,
                    proceeds_usd=proceeds,
                )
                gaps.append(gap)
                logger.warning(
                    "Over-sell of %s %s by %s in tx %s (block %d); treating excess as zero-cost",
                    to_sell,
                    trade.token_address,
                    trade.wallet_address,
                    trade.transaction_hash,
                    trade.block_number,
                )

        remaining = sum((lot.amount for lot in lots), ZERO)
        cost_basis = sum((lot.cost_usd for lot in lots), ZERO)

    return PositionState(
        remaining_amount=remaining,
        cost_basis_usd=cost_basis,
        realized_pnl_usd=realized,
        trade_count=processed,
        lots=tuple(lots),
        gaps=tuple(gaps),
    )


def calculate_unrealized_pnl(position: PositionDTO | PositionState, current_price: Decimal) -> Decimal:
    """Paper PnL of the open amount at ``current_price``."""
    with localcontext(DECIMAL_CONTEXT):
        return position.remaining_amount * Decimal(current_price) - position.cost_basis_usd
