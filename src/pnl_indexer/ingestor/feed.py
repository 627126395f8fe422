"""GraphQL client for the upstream DEX swap feed (Bitquery-compatible)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from pnl_indexer.ingestor.models import RawSwap

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = "https://streaming.bitquery.io/graphql"
DEFAULT_TIMEOUT_SECONDS = 30.0
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)

_SWAP_FIELDS = """
        Block { Number Time }
        Transaction { Hash From Index }
        Log { Index }
        Trade {
          Buy {
            Amount
            AmountInUSD
            Buyer
            Currency { Symbol SmartContract Decimals }
          }
          Sell {
            Amount
            AmountInUSD
            Seller
            Currency { Symbol SmartContract Decimals }
          }
          Dex { ProtocolName }
        }
"""

_TOKEN_FILTER = """
          {Trade: {Buy: {Currency: {SmartContract: {is: $token}}}}}
          {Trade: {Sell: {Currency: {SmartContract: {is: $token}}}}}
"""

_WALLET_FILTER = """
          {Trade: {Buy: {Currency: {SmartContract: {is: $token}}, Buyer: {is: $wallet}}}}
          {Trade: {Sell: {Currency: {SmartContract: {is: $token}}, Seller: {is: $wallet}}}}
          {Trade: {Buy: {Currency: {SmartContract: {is: $token}}}}, Transaction: {From: {is: $wallet}}}
          {Trade: {Sell: {Currency: {SmartContract: {is: $token}}}}, Transaction: {From: {is: $wallet}}}
"""


def build_swap_query(*, wallet_scoped: bool) -> str:
    """GraphQL document for one page of swaps touching a token."""
    wallet_var = ", $wallet: String!" if wallet_scoped else ""
    any_filter = _WALLET_FILTER if wallet_scoped else _TOKEN_FILTER
    return f"""
query TokenSwaps($network: evm_network!, $token: String!, $limit: Int!, $offset: Int!,
                 $fromBlock: String!, $toBlock: String!{wallet_var}) {{
  EVM(dataset: archive, network: $network) {{
    DEXTrades(
      where: {{
        any: [{any_filter}        ]
        Block: {{Number: {{ge: $fromBlock, le: $toBlock}}}}
      }}
      orderBy: [{{ascending: Block_Number}}, {{ascending: Transaction_Index}}, {{ascending: Log_Index}}]
      limit: {{count: $limit, offset: $offset}}
    ) {{{_SWAP_FIELDS}    }}
  }}
}}
"""


class FeedError(Exception):
    """Base exception for swap feed errors."""


class FeedTransientError(FeedError):
    """Raised for retryable failures (429/5xx, timeouts, network issues)."""


class FeedRequestError(FeedError):
    """Raised for non-retryable failures (bad request, auth, GraphQL errors)."""


@dataclass
class FeedPage:
    """One page of swap records."""

    swaps: list[RawSwap] = field(default_factory=list)
    raw_count: int = 0
    malformed: int = 0


class SwapFeedClient:
    """Pages DEX trades for a token out of the GraphQL feed.

    Example:
        ```python
        client = SwapFeedClient(api_key="...", network="base")
        page = await client.fetch_page("0xtoken", offset=0, limit=500)
        await client.close()
        ```
    """

    def __init__(
        self,
        *,
        url: str = DEFAULT_FEED_URL,
        api_key: str | None = None,
        network: str = "base",
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._network = network
        self._timeout = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self.api_calls = 0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
            self._owns_client = True
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def fetch_page(
        self,
        token_address: str,
        *,
        offset: int,
        limit: int,
        wallet_address: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> FeedPage:
        """Fetch one page of swaps that touch ``token_address``.

        Raises:
            FeedTransientError: On 429/5xx responses, timeouts or transport errors.
            FeedRequestError: On other HTTP errors or GraphQL errors.
        """
        variables: dict[str, Any] = {
            "network": self._network,
            "token": token_address.lower(),
            "limit": limit,
            "offset": offset,
            "fromBlock": str(from_block if from_block is not None else 0),
            "toBlock": str(to_block if to_block is not None else 2**63 - 1),
        }
        if wallet_address:
            variables["wallet"] = wallet_address.lower()
        payload = {
            "query": build_swap_query(wallet_scoped=bool(wallet_address)),
            "variables": variables,
        }

        client = await self._get_client()
        self.api_calls += 1
        try:
            response = await client.post(self._url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise FeedTransientError(f"Swap feed request timed out: {e}") from e
        except httpx.TransportError as e:
            raise FeedTransientError(f"Swap feed transport error: {e}") from e

        if response.status_code in RETRY_STATUS_CODES:
            raise FeedTransientError(f"Swap feed returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise FeedRequestError(
                f"Swap feed returned HTTP {response.status_code}: {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise FeedTransientError(f"Swap feed returned invalid JSON: {e}") from e

        errors = body.get("errors")
        if errors:
            messages = "; ".join(str(err.get("message", err)) for err in errors)
            raise FeedRequestError(f"Swap feed GraphQL errors: {messages}")

        records = ((body.get("data") or {}).get("EVM") or {}).get("DEXTrades") or []
        page = FeedPage(raw_count=len(records))
        for record in records:
            try:
                page.swaps.append(RawSwap.from_dict(record))
            except (KeyError, TypeError, ValueError) as e:
                page.malformed += 1
                logger.warning("Skipping malformed swap record: %s", e)
        return page

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
