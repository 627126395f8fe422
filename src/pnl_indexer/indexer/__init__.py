"""Wallet indexing orchestration and job status tracking."""

from pnl_indexer.indexer.log_buffer import LogEntry, MemoryLogHandler
from pnl_indexer.indexer.orchestrator import (
    ContestRecalculation,
    IndexAck,
    IndexerError,
    IndexerNotRunning,
    IndexerQueueFull,
    IndexerState,
    IndexerStats,
    JobOutcome,
    JobTimeout,
    TokenSyncResult,
    WalletIndexer,
)
from pnl_indexer.indexer.status import (
    IndexingJob,
    JobStatus,
    JobStatusRegistry,
    format_time_remaining,
)

__all__ = [
    "ContestRecalculation",
    "IndexAck",
    "IndexerError",
    "IndexerNotRunning",
    "IndexerQueueFull",
    "IndexerState",
    "IndexerStats",
    "IndexingJob",
    "JobOutcome",
    "JobStatus",
    "JobStatusRegistry",
    "JobTimeout",
    "LogEntry",
    "MemoryLogHandler",
    "TokenSyncResult",
    "WalletIndexer",
    "format_time_remaining",
]
