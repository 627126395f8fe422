"""Tests for the swap feed GraphQL client."""

import json

import httpx
import pytest

from pnl_indexer.ingestor.feed import (
    FeedRequestError,
    FeedTransientError,
    SwapFeedClient,
    build_swap_query,
)

TOKEN = "0x3333333333333333333333333333333333333333"
WALLET = "0x1111111111111111111111111111111111111111"


def _client(handler) -> SwapFeedClient:
    transport = httpx.MockTransport(handler)
    return SwapFeedClient(
        url="https://feed.test/graphql",
        api_key="secret",
        network="base",
        client=httpx.AsyncClient(transport=transport),
    )


def _body(records) -> dict:
    return {"data": {"EVM": {"DEXTrades": records}}}


class TestBuildSwapQuery:
    def test_token_query_has_no_wallet_variable(self) -> None:
        query = build_swap_query(wallet_scoped=False)
        assert "$wallet" not in query
        assert (
            "orderBy: [{ascending: Block_Number}, {ascending: Transaction_Index}, "
            "{ascending: Log_Index}]"
        ) in query
        assert "Transaction { Hash From Index }" in query
        assert "Log { Index }" in query

    def test_wallet_query_filters_on_sender_too(self) -> None:
        query = build_swap_query(wallet_scoped=True)
        assert "$wallet: String!" in query
        assert "Transaction: {From: {is: $wallet}}" in query


class TestFetchPage:
    @pytest.mark.asyncio
    async def test_parses_records_and_sends_variables(self, make_swap_record) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json=_body([make_swap_record(block=10)]))

        feed = _client(handler)
        page = await feed.fetch_page(
            TOKEN,
            offset=500,
            limit=500,
            wallet_address=WALLET,
            from_block=1,
            to_block=99,
        )

        assert page.raw_count == 1
        assert page.malformed == 0
        assert page.swaps[0].block_number == 10
        assert feed.api_calls == 1
        assert seen["auth"] == "Bearer secret"
        variables = seen["payload"]["variables"]
        assert variables["token"] == TOKEN
        assert variables["wallet"] == WALLET
        assert variables["offset"] == 500
        assert variables["fromBlock"] == "1"
        assert variables["toBlock"] == "99"
        await feed.close()

    @pytest.mark.asyncio
    async def test_malformed_records_are_counted(self, make_swap_record) -> None:
        broken = make_swap_record()
        del broken["Transaction"]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=_body([make_swap_record(), broken]))

        page = await _client(handler).fetch_page(TOKEN, offset=0, limit=10)

        assert page.raw_count == 2
        assert len(page.swaps) == 1
        assert page.malformed == 1

    @pytest.mark.asyncio
    async def test_empty_data(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": {"EVM": {"DEXTrades": None}}})

        page = await _client(handler).fetch_page(TOKEN, offset=0, limit=10)

        assert page.raw_count == 0
        assert page.swaps == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status(self, status: int) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, text="busy")

        with pytest.raises(FeedTransientError):
            await _client(handler).fetch_page(TOKEN, offset=0, limit=10)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="bad key")

        with pytest.raises(FeedRequestError, match="401"):
            await _client(handler).fetch_page(TOKEN, offset=0, limit=10)

    @pytest.mark.asyncio
    async def test_graphql_errors(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"errors": [{"message": "points exhausted"}]})

        with pytest.raises(FeedRequestError, match="points exhausted"):
            await _client(handler).fetch_page(TOKEN, offset=0, limit=10)

    @pytest.mark.asyncio
    async def test_transport_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FeedTransientError):
            await _client(handler).fetch_page(TOKEN, offset=0, limit=10)

    @pytest.mark.asyncio
    async def test_invalid_json_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>gateway</html>")

        with pytest.raises(FeedTransientError, match="invalid JSON"):
            await _client(handler).fetch_page(TOKEN, offset=0, limit=10)
