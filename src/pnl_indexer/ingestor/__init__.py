"""Data ingestion layer - swap feed paging and normalization."""

from pnl_indexer.ingestor.feed import (
    FeedError,
    FeedPage,
    FeedRequestError,
    FeedTransientError,
    SwapFeedClient,
)
from pnl_indexer.ingestor.models import RawSwap, SwapLeg
from pnl_indexer.ingestor.normalizer import is_protocol_fee_swap, normalize_swap, trade_side
from pnl_indexer.ingestor.pipeline import (
    IngestionResult,
    database_trade_sink,
    SkippedPage,
    SwapIngestionPipeline,
    UpstreamPageError,
)

__all__ = [
    "FeedError",
    "FeedPage",
    "FeedRequestError",
    "FeedTransientError",
    "IngestionResult",
    "RawSwap",
    "SkippedPage",
    "SwapFeedClient",
    "SwapIngestionPipeline",
    "SwapLeg",
    "UpstreamPageError",
    "database_trade_sink",
    "is_protocol_fee_swap",
    "normalize_swap",
    "trade_side",
]
