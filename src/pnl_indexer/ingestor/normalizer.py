"""Turn raw swap records into ledger trades for a tracked token."""

from __future__ import annotations

import logging
from collections.abc import Collection
from decimal import Decimal

from pnl_indexer.ingestor.models import RawSwap
from pnl_indexer.storage.models import TradeSide
from pnl_indexer.storage.repos import TradeDTO

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "bitquery"
FEE_DUST_USD = Decimal("0.30")


def trade_side(swap: RawSwap, token_address: str) -> TradeSide | None:
    """BUY when the token is bought in this swap, SELL when it is sold."""
    token = token_address.lower()
    if swap.buy.currency_address == token:
        return TradeSide.BUY
    if swap.sell.currency_address == token:
        return TradeSide.SELL
    return None


def is_protocol_fee_swap(
    swap: RawSwap,
    wallet_address: str,
    *,
    protocol_addresses: Collection[str] = (),
    fee_protocol_hint: str = "clanker",
) -> bool:
    """Heuristic for fee-locker transfers that are not real wallet trades.

    A leg is dropped when its wallet is a known protocol contract, or when it
    is dust (under $0.30 on the cheaper side) on a protocol whose name contains
    ``fee_protocol_hint``.
    """
    wallet = wallet_address.lower()
    if wallet in protocol_addresses:
        return True
    if not fee_protocol_hint or fee_protocol_hint.lower() not in swap.protocol_name.lower():
        return False
    usd_values = [v for v in (swap.buy.amount_usd, swap.sell.amount_usd) if v > 0]
    if not usd_values:
        return False
    return min(usd_values) < FEE_DUST_USD and wallet in (swap.buy.counterparty, swap.sell.counterparty)


def normalize_swap(
    swap: RawSwap,
    token_address: str,
    *,
    leg_index: int = 0,
    source: str = DEFAULT_SOURCE,
) -> TradeDTO | None:
    """Normalize one swap into a trade on ``token_address``.

    Args:
        swap: Raw feed record.
        token_address: Tracked token.
        leg_index: Position of the record within its block in the feed. Only
            used as the in-block tiebreak when the record carries no log index.
        source: Provenance label stored with the trade.

    Returns:
        The trade, or None when the swap does not move the tracked token or
        carries no token amount.
    """
    side = trade_side(swap, token_address)
    if side is None:
        return None

    if side == TradeSide.BUY:
        leg, other = swap.buy, swap.sell
    else:
        leg, other = swap.sell, swap.buy

    amount = leg.amount
    if amount <= 0:
        logger.debug("Dropping swap %s with non-positive amount %s", swap.transaction_hash, amount)
        return None

    usd_value = leg.amount_usd if leg.amount_usd > 0 else other.amount_usd
    if usd_value < 0:
        usd_value = Decimal("0")

    wallet = leg.counterparty or swap.transaction_from
    if not wallet:
        logger.debug("Dropping swap %s without a wallet", swap.transaction_hash)
        return None

    if swap.log_index is None:
        logger.debug("Swap %s has no log index; ordering by feed position", swap.transaction_hash)

    return TradeDTO(
        wallet_address=wallet,
        token_address=token_address.lower(),
        side=side,
        token_amount=amount,
        usd_value=usd_value,
        price_usd=usd_value / amount,
        block_number=swap.block_number,
        tx_index=swap.transaction_index if swap.transaction_index is not None else 0,
        log_index=swap.log_index if swap.log_index is not None else leg_index,
        timestamp=swap.block_time,
        transaction_hash=swap.transaction_hash,
        source=source,
    )
