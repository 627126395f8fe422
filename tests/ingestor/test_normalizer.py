"""Tests for swap normalization."""

from decimal import Decimal

from pnl_indexer.ingestor.models import RawSwap
from pnl_indexer.ingestor.normalizer import is_protocol_fee_swap, normalize_swap, trade_side
from pnl_indexer.storage.models import TradeSide

WALLET = "0x1111111111111111111111111111111111111111"
TOKEN = "0x3333333333333333333333333333333333333333"
QUOTE = "0x4200000000000000000000000000000000000006"
ROUTER = "0x6666666666666666666666666666666666666666"


class TestTradeSide:
    def test_buy_when_token_is_bought(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record())
        assert trade_side(swap, TOKEN) == TradeSide.BUY

    def test_sell_when_token_is_sold(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buy_token=QUOTE, sell_token=TOKEN))
        assert trade_side(swap, TOKEN) == TradeSide.SELL

    def test_unrelated_swap(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buy_token=QUOTE, sell_token="0xdead"))
        assert trade_side(swap, TOKEN) is None


class TestNormalizeSwap:
    def test_buy(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(block=7, buy_amount="200", buy_usd="50"))

        trade = normalize_swap(swap, TOKEN, leg_index=3)

        assert trade is not None
        assert trade.side == TradeSide.BUY
        assert trade.wallet_address == WALLET
        assert trade.token_amount == Decimal("200")
        assert trade.usd_value == Decimal("50")
        assert trade.price_usd == Decimal("0.25")
        assert trade.block_number == 7
        assert trade.log_index == 3
        assert trade.source == "bitquery"

    def test_chain_position_wins_over_feed_position(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(tx_index=12, log_index=40))

        trade = normalize_swap(swap, TOKEN, leg_index=3)

        assert (trade.tx_index, trade.log_index) == (12, 40)

    def test_sell_uses_seller_as_wallet(self, make_swap_record) -> None:
        record = make_swap_record(
            buy_token=QUOTE,
            buy_amount="0.01",
            buy_usd="25",
            buyer=ROUTER,
            sell_token=TOKEN,
            sell_amount="100",
            sell_usd="25",
            seller=WALLET,
        )

        trade = normalize_swap(RawSwap.from_dict(record), TOKEN)

        assert trade is not None
        assert trade.side == TradeSide.SELL
        assert trade.wallet_address == WALLET
        assert trade.token_amount == Decimal("100")

    def test_usd_falls_back_to_other_leg(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buy_amount="10", buy_usd="0", sell_usd="5"))

        trade = normalize_swap(swap, TOKEN)

        assert trade is not None
        assert trade.usd_value == Decimal("5")
        assert trade.price_usd == Decimal("0.5")

    def test_missing_counterparty_uses_sender(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buyer="", tx_from=ROUTER))

        trade = normalize_swap(swap, TOKEN)

        assert trade is not None
        assert trade.wallet_address == ROUTER

    def test_zero_amount_is_dropped(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buy_amount="0"))
        assert normalize_swap(swap, TOKEN) is None

    def test_unrelated_swap_is_dropped(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buy_token="0xdead", sell_token=QUOTE))
        assert normalize_swap(swap, TOKEN) is None

    def test_no_wallet_is_dropped(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(buyer="", tx_from=""))
        assert normalize_swap(swap, TOKEN) is None


class TestProtocolFeeFilter:
    def test_known_protocol_address(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record())
        assert is_protocol_fee_swap(swap, WALLET, protocol_addresses={WALLET}) is True

    def test_dust_on_fee_protocol(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(
            make_swap_record(protocol="Clanker v4", buy_usd="0.10", sell_usd="0.12")
        )
        assert is_protocol_fee_swap(swap, WALLET) is True

    def test_real_trade_on_fee_protocol_is_kept(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(make_swap_record(protocol="clanker", buy_usd="40", sell_usd="40"))
        assert is_protocol_fee_swap(swap, WALLET) is False

    def test_dust_elsewhere_is_kept(self, make_swap_record) -> None:
        swap = RawSwap.from_dict(
            make_swap_record(protocol="uniswap_v3", buy_usd="0.10", sell_usd="0.10")
        )
        assert is_protocol_fee_swap(swap, WALLET) is False
