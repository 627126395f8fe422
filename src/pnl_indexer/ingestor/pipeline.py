"""Swap ingestion pipeline.

Pages through the swap feed for one token (optionally one wallet and a
block range), normalizes each swap into ledger trades and hands them to a
sink that inserts them with upsert-or-ignore semantics. Pagination stops on
a short or empty page, or at the page ceiling. Pages that keep failing
after bounded retries are skipped and recorded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pnl_indexer.ingestor.feed import FeedError, FeedPage, FeedTransientError, SwapFeedClient
from pnl_indexer.ingestor.normalizer import DEFAULT_SOURCE, is_protocol_fee_swap, normalize_swap
from pnl_indexer.storage.database import retry_on_conflict
from pnl_indexer.storage.repos import TradeDTO, TradeRepository

if TYPE_CHECKING:
    from pnl_indexer.config import SwapFeedSettings
    from pnl_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500
DEFAULT_MAX_PAGES = 200
DEFAULT_PAGE_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
MAX_CONSECUTIVE_SKIPPED_PAGES = 3

TradeSink = Callable[[list[TradeDTO]], Awaitable[int]]
ProgressCallback = Callable[["IngestionResult"], None]


def database_trade_sink(db: DatabaseManager, *, retries: int = 3) -> TradeSink:
    """Sink that inserts trades into the ledger, ignoring duplicates.

    Returns:
        Async callable returning how many trades were new.
    """

    async def _sink(trades: list[TradeDTO]) -> int:
        async def _write() -> int:
            async with db.get_async_session() as session:
                return await TradeRepository(session).insert_ignore_many(trades)

        inserted = await retry_on_conflict(_write, retries=retries, description="trade insert")
        if inserted < len(trades):
            logger.debug("Ignored %d duplicate trade(s)", len(trades) - inserted)
        return inserted

    return _sink


class UpstreamPageError(FeedError):
    """A feed page still failed after all retries."""

    def __init__(self, message: str, *, offset: int, last_exception: Exception | None = None) -> None:
        super().__init__(message)
        self.offset = offset
        self.last_exception = last_exception


@dataclass(frozen=True)
class SkippedPage:
    page_number: int
    offset: int
    error: str


@dataclass
class IngestionResult:
    """Outcome and counters of one ingestion run."""

    token_address: str
    wallet_address: str | None = None
    from_block: int | None = None
    to_block: int | None = None
    trades: list[TradeDTO] = field(default_factory=list)
    observed_wallets: set[str] = field(default_factory=set)
    pages_fetched: int = 0
    api_calls: int = 0
    swaps_seen: int = 0
    swaps_skipped: int = 0
    trades_inserted: int = 0
    skipped_pages: list[SkippedPage] = field(default_factory=list)
    hit_page_ceiling: bool = False
    max_block_seen: int | None = None

    @property
    def complete(self) -> bool:
        """True when every page of the range was read."""
        return not self.skipped_pages and not self.hit_page_ceiling

    def safe_cursor_block(self) -> int | None:
        """Highest block known to be fully ingested, if any.

        The feed is ordered by block, so after hitting the page ceiling every
        block before the last one seen is complete. Skipped pages leave an
        unknown hole and never let the cursor advance.
        """
        if self.skipped_pages:
            return None
        if self.hit_page_ceiling:
            if self.max_block_seen is None:
                return None
            return self.max_block_seen - 1
        if self.to_block is not None:
            return self.to_block
        return self.max_block_seen


class SwapIngestionPipeline:
    """Fetch, normalize and persist swaps for one token.

    Example:
        ```python
        feed = SwapFeedClient(api_key="...")
        pipeline = SwapIngestionPipeline(feed, sink=trade_sink)
        result = await pipeline.run("0xtoken", wallet_address="0xwallet", from_block=1)
        print(result.trades_inserted, result.observed_wallets)
        ```
    """

    def __init__(
        self,
        feed: SwapFeedClient,
        *,
        sink: TradeSink | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_retries: int = DEFAULT_PAGE_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        protocol_addresses: Collection[str] = (),
        fee_protocol_hint: str = "clanker",
        source: str = DEFAULT_SOURCE,
    ) -> None:
        self._feed = feed
        self._sink = sink
        self._page_size = page_size
        self._max_pages = max_pages
        self._page_retries = page_retries
        self._retry_base_delay = retry_base_delay
        self._protocol_addresses = frozenset(a.lower() for a in protocol_addresses)
        self._fee_protocol_hint = fee_protocol_hint
        self._source = source

    @classmethod
    def from_settings(
        cls,
        settings: SwapFeedSettings,
        feed: SwapFeedClient,
        *,
        sink: TradeSink | None = None,
    ) -> SwapIngestionPipeline:
        return cls(
            feed,
            sink=sink,
            page_size=settings.page_size,
            max_pages=settings.max_pages,
            page_retries=settings.page_retries,
            retry_base_delay=settings.retry_base_delay_seconds,
            protocol_addresses=settings.protocol_fee_addresses,
            fee_protocol_hint=settings.fee_protocol_hint,
        )

    async def run(
        self,
        token_address: str,
        *,
        wallet_address: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
        progress: ProgressCallback | None = None,
    ) -> IngestionResult:
        """Ingest every swap of ``token_address`` in the block range.

        Args:
            token_address: Tracked token.
            wallet_address: Restrict to this wallet's trades.
            from_block: First block (inclusive).
            to_block: Last block (inclusive).
            progress: Called with the running result after every page.

        Returns:
            The run's trades, observed wallets and counters.
        """
        token = token_address.lower()
        wallet = wallet_address.lower() if wallet_address else None
        result = IngestionResult(
            token_address=token,
            wallet_address=wallet,
            from_block=from_block,
            to_block=to_block,
        )
        seen_keys: set[tuple[str, str, str, str]] = set()
        block_ordinals: dict[int, int] = {}
        offset = 0
        consecutive_skips = 0

        for page_number in range(self._max_pages):
            try:
                page = await self._fetch_with_retry(
                    result,
                    token,
                    offset=offset,
                    wallet_address=wallet,
                    from_block=from_block,
                    to_block=to_block,
                )
            except UpstreamPageError as e:
                result.skipped_pages.append(
                    SkippedPage(page_number=page_number, offset=offset, error=str(e))
                )
                logger.warning("Skipping swap page %d (offset %d) for %s: %s", page_number, offset, token, e)
                consecutive_skips += 1
                if consecutive_skips >= MAX_CONSECUTIVE_SKIPPED_PAGES:
                    logger.error(
                        "Giving up on %s after %d consecutive skipped pages", token, consecutive_skips
                    )
                    break
                offset += self._page_size
                continue

            consecutive_skips = 0
            result.pages_fetched += 1
            if page.raw_count == 0:
                break

            batch = self._normalize_page(result, page, token, wallet, seen_keys, block_ordinals)
            if batch:
                result.trades.extend(batch)
                if self._sink is not None:
                    result.trades_inserted += await self._sink(batch)

            logger.debug(
                "Page %d for %s: %d records, %d trades", page_number, token, page.raw_count, len(batch)
            )
            if progress is not None:
                progress(result)

            if page.raw_count < self._page_size:
                break
            offset += self._page_size
        else:
            result.hit_page_ceiling = True
            logger.warning("Reached page ceiling (%d) while ingesting %s", self._max_pages, token)

        logger.info(
            "Ingested %s%s: pages=%d calls=%d swaps=%d trades=%d inserted=%d skipped_pages=%d",
            token,
            f" for {wallet}" if wallet else "",
            result.pages_fetched,
            result.api_calls,
            result.swaps_seen,
            len(result.trades),
            result.trades_inserted,
            len(result.skipped_pages),
        )
        return result

    async def _fetch_with_retry(
        self,
        result: IngestionResult,
        token: str,
        *,
        offset: int,
        wallet_address: str | None,
        from_block: int | None,
        to_block: int | None,
    ) -> FeedPage:
        last_error: Exception | None = None
        delay = self._retry_base_delay
        for attempt in range(self._page_retries + 1):
            result.api_calls += 1
            try:
                return await self._feed.fetch_page(
                    token,
                    offset=offset,
                    limit=self._page_size,
                    wallet_address=wallet_address,
                    from_block=from_block,
                    to_block=to_block,
                )
            except FeedTransientError as e:
                last_error = e
                if attempt == self._page_retries:
                    break
                logger.warning(
                    "Swap page at offset %d failed (attempt %d/%d): %s. Retrying in %.1f seconds...",
                    offset,
                    attempt + 1,
                    self._page_retries + 1,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
            except FeedError as e:
                last_error = e
                break

        raise UpstreamPageError(
            f"Page at offset {offset} failed: {last_error}",
            offset=offset,
            last_exception=last_error,
        )

    def _normalize_page(
        self,
        result: IngestionResult,
        page: FeedPage,
        token: str,
        wallet: str | None,
        seen_keys: set[tuple[str, str, str, str]],
        block_ordinals: dict[int, int],
    ) -> list[TradeDTO]:
        batch: list[TradeDTO] = []
        result.swaps_skipped += page.malformed
        for swap in page.swaps:
            result.swaps_seen += 1
            ordinal = block_ordinals.get(swap.block_number, 0)
            block_ordinals[swap.block_number] = ordinal + 1
            if result.max_block_seen is None or swap.block_number > result.max_block_seen:
                result.max_block_seen = swap.block_number

            trade = normalize_swap(swap, token, leg_index=ordinal, source=self._source)
            if trade is None:
                result.swaps_skipped += 1
                continue
            if is_protocol_fee_swap(
                swap,
                trade.wallet_address,
                protocol_addresses=self._protocol_addresses,
                fee_protocol_hint=self._fee_protocol_hint,
            ):
                result.swaps_skipped += 1
                continue

            result.observed_wallets.add(trade.wallet_address)
            if wallet is not None and trade.wallet_address != wallet:
                # Router swaps name the router as buyer/seller; the sender is the trader.
                if swap.transaction_from != wallet:
                    continue
                trade.wallet_address = wallet

            if trade.dedup_key in seen_keys:
                continue
            seen_keys.add(trade.dedup_key)
            batch.append(trade)
        return batch
