"""Data models for the swap feed."""

import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any


def _decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def _optional_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=UTC)
    if isinstance(value, str) and value:
        with contextlib.suppress(ValueError):
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.fromtimestamp(0, tz=UTC)


@dataclass(frozen=True)
class SwapLeg:
    """One side of a DEX swap as reported by the feed."""

    currency_address: str
    symbol: str
    amount: Decimal
    amount_usd: Decimal
    counterparty: str

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, party_field: str) -> "SwapLeg":
        """Create a leg from a ``Trade.Buy`` / ``Trade.Sell`` object."""
        currency = data.get("Currency") or {}
        return cls(
            currency_address=str(currency.get("SmartContract") or "").lower(),
            symbol=str(currency.get("Symbol") or ""),
            amount=_decimal(data.get("Amount")),
            amount_usd=_decimal(data.get("AmountInUSD")),
            counterparty=str(data.get(party_field) or "").lower(),
        )


@dataclass(frozen=True)
class RawSwap:
    """A DEX trade record: a buy leg and a sell leg in one transaction."""

    block_number: int
    block_time: datetime
    transaction_hash: str
    transaction_from: str
    buy: SwapLeg
    sell: SwapLeg
    protocol_name: str = ""
    transaction_index: int | None = None
    log_index: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RawSwap":
        """Create a swap from one ``DEXTrades`` entry.

        Raises:
            KeyError: If the block or transaction section is missing.
            ValueError: If the block number is not an integer.
        """
        block = data["Block"]
        tx = data["Transaction"]
        log = data.get("Log") or {}
        trade = data.get("Trade") or {}
        dex = trade.get("Dex") or {}
        return cls(
            block_number=int(block["Number"]),
            block_time=_parse_time(block.get("Time")),
            transaction_hash=str(tx["Hash"]).lower(),
            transaction_from=str(tx.get("From") or "").lower(),
            buy=SwapLeg.from_dict(trade.get("Buy") or {}, party_field="Buyer"),
            sell=SwapLeg.from_dict(trade.get("Sell") or {}, party_field="Seller"),
            protocol_name=str(dex.get("ProtocolName") or ""),
            transaction_index=_optional_int(tx.get("Index")),
            log_index=_optional_int(log.get("Index")),
        )
