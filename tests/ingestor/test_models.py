"""Tests for swap feed data models."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from pnl_indexer.ingestor.models import RawSwap, SwapLeg


class TestSwapLeg:
    """Tests for SwapLeg model."""

    def test_from_dict(self) -> None:
        data = {
            "Amount": "1234.5",
            "AmountInUSD": "61.72",
            "Buyer": "0xABCdef0000000000000000000000000000000001",
            "Currency": {"Symbol": "MEME", "SmartContract": "0xToKeN"},
        }

        leg = SwapLeg.from_dict(data, party_field="Buyer")

        assert leg.currency_address == "0xtoken"
        assert leg.symbol == "MEME"
        assert leg.amount == Decimal("1234.5")
        assert leg.amount_usd == Decimal("61.72")
        assert leg.counterparty == "0xabcdef0000000000000000000000000000000001"

    @pytest.mark.parametrize("raw", [None, "", "not-a-number", "NaN", "Infinity"])
    def test_unusable_amounts_become_zero(self, raw) -> None:
        leg = SwapLeg.from_dict({"Amount": raw, "AmountInUSD": raw}, party_field="Seller")

        assert leg.amount == Decimal("0")
        assert leg.amount_usd == Decimal("0")
        assert leg.currency_address == ""
        assert leg.counterparty == ""

    def test_frozen(self) -> None:
        leg = SwapLeg.from_dict({}, party_field="Buyer")
        with pytest.raises(AttributeError):
            leg.amount = Decimal("1")  # type: ignore[misc]


class TestRawSwap:
    """Tests for RawSwap model."""

    def test_from_dict(self, make_swap_record) -> None:
        record = make_swap_record(block=42, tx="0xABC", protocol="clanker_v4")

        swap = RawSwap.from_dict(record)

        assert swap.block_number == 42
        assert swap.block_time == datetime(2026, 1, 1, tzinfo=UTC)
        assert swap.transaction_hash == "0xabc"
        assert swap.transaction_from == "0x1111111111111111111111111111111111111111"
        assert swap.buy.amount == Decimal("100")
        assert swap.sell.amount == Decimal("0.02")
        assert swap.protocol_name == "clanker_v4"

    def test_block_time_variants(self, make_swap_record) -> None:
        naive = RawSwap.from_dict(make_swap_record(time="2026-03-01T12:00:00"))
        record = make_swap_record()
        record["Block"]["Time"] = 0
        epoch = RawSwap.from_dict(record)

        assert naive.block_time == datetime(2026, 3, 1, 12, tzinfo=UTC)
        assert epoch.block_time == datetime(1970, 1, 1, tzinfo=UTC)

    def test_missing_trade_section_gives_empty_legs(self, make_swap_record) -> None:
        record = make_swap_record()
        del record["Trade"]

        swap = RawSwap.from_dict(record)

        assert swap.buy.amount == Decimal("0")
        assert swap.protocol_name == ""

    def test_missing_block_raises(self, make_swap_record) -> None:
        record = make_swap_record()
        del record["Block"]

        with pytest.raises(KeyError):
            RawSwap.from_dict(record)

    def test_bad_block_number_raises(self, make_swap_record) -> None:
        record = make_swap_record()
        record["Block"]["Number"] = "latest"

        with pytest.raises(ValueError):
            RawSwap.from_dict(record)

    def test_chain_position(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(tx_index=4, log_index=17))

        assert swap.transaction_index == 4
        assert swap.log_index == 17

    def test_chain_position_is_optional(self, make_swap_record) -> None:
        record = make_swap_record()
        record["Transaction"]["Index"] = "n/a"

        swap = RawSwap.from_dict(record)

        assert swap.transaction_index is None
        assert swap.log_index is None
