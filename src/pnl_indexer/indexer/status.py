"""In-memory status of indexing jobs.

The registry is observational only: workers write progress into it and
status views read snapshots. Nothing in accounting reads it.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

JobKey = tuple[str, str]

TOKEN_SYNC_WALLET = "*"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def finished(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMED_OUT)


@dataclass
class IndexingJob:
    """Progress record of one (wallet, token) job."""

    wallet_address: str
    token_address: str
    status: JobStatus
    started_at: float
    updated_at: float
    finished_at: float | None = None
    pages_fetched: int = 0
    api_calls: int = 0
    swaps_seen: int = 0
    swaps_skipped: int = 0
    trades_inserted: int = 0
    items_done: int = 0
    items_total: int = 0
    joined: int = 0
    error: str | None = None

    @property
    def key(self) -> JobKey:
        return (self.wallet_address, self.token_address)

    def estimated_seconds_remaining(self, now: float) -> float | None:
        """Linear estimate from ``items_done`` / ``items_total``."""
        if self.items_total <= 0 or self.items_done <= 0:
            return None
        elapsed = now - self.started_at
        if elapsed <= 0:
            return None
        rate = self.items_done / elapsed
        return max(self.items_total - self.items_done, 0) / rate

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for name in ("started_at", "updated_at", "finished_at"):
            value = data[name]
            data[name] = datetime.fromtimestamp(value, tz=UTC).isoformat() if value else None
        return data


def format_time_remaining(seconds: float | None) -> str:
    """Human readable remaining time.

    Example:
        ```python
        format_time_remaining(None)   # "calculating..."
        format_time_remaining(45)     # "45s"
        format_time_remaining(7500)   # "2h 5m"
        ```
    """
    if seconds is None:
        return "calculating..."
    if seconds < 60:
        return f"{math.ceil(seconds)}s"
    if seconds < 3600:
        return f"{math.ceil(seconds / 60)}m"
    hours = int(seconds // 3600)
    minutes = math.ceil((seconds % 3600) / 60)
    return f"{hours}h {minutes}m"


class JobStatusRegistry:
    """Bounded, thread-safe map of job key to :class:`IndexingJob`.

    When full, the oldest finished job is evicted first; active jobs are
    only evicted when nothing has finished. Finished jobs older than
    ``ttl_seconds`` disappear on :meth:`expire` (also run on every start).

    Args:
        max_entries: Maximum number of jobs kept.
        ttl_seconds: Lifetime of finished jobs.
        clock: Wall-clock source, seconds since the epoch.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 3600.0,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._ttl = ttl_seconds
        self._clock = clock
        self._jobs: OrderedDict[JobKey, IndexingJob] = OrderedDict()
        self._lock = threading.Lock()

    def start(self, key: JobKey, *, status: JobStatus = JobStatus.QUEUED) -> IndexingJob:
        """Register a fresh job for ``key``, replacing any finished one."""
        now = self._clock()
        with self._lock:
            self._expire_locked(now)
            self._jobs.pop(key, None)
            if len(self._jobs) >= self._max_entries:
                self._evict_locked()
            job = IndexingJob(
                wallet_address=key[0],
                token_address=key[1],
                status=status,
                started_at=now,
                updated_at=now,
            )
            self._jobs[key] = job
            return job

    def update(self, key: JobKey, **fields: Any) -> IndexingJob | None:
        """Set counters or status on an existing job."""
        with self._lock:
            job = self._jobs.get(key)
            if job is None:
                return None
            for name, value in fields.items():
                if not hasattr(job, name) or name in ("wallet_address", "token_address"):
                    raise AttributeError(f"IndexingJob has no updatable field {name!r}")
                setattr(job, name, value)
            job.updated_at = self._clock()
            return job

    def finish(self, key: JobKey, status: JobStatus, error: str | None = None) -> IndexingJob | None:
        with self._lock:
            job = self._jobs.get(key)
            if job is None:
                return None
            now = self._clock()
            job.status = status
            job.error = error
            job.updated_at = now
            job.finished_at = now
            return job

    def get(self, key: JobKey) -> IndexingJob | None:
        with self._lock:
            job = self._jobs.get(key)
            return IndexingJob(**asdict(job)) if job else None

    def snapshot(self) -> list[dict[str, Any]]:
        """Serialized jobs; active ones carry a human readable ``eta``."""
        now = self._clock()
        with self._lock:
            return [
                {
                    **job.to_dict(),
                    "eta": None
                    if job.status.finished
                    else format_time_remaining(job.estimated_seconds_remaining(now)),
                }
                for job in self._jobs.values()
            ]

    def active(self) -> list[IndexingJob]:
        with self._lock:
            return [IndexingJob(**asdict(j)) for j in self._jobs.values() if not j.status.finished]

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()

    def expire(self) -> int:
        """Drop finished jobs older than the TTL. Returns how many were dropped."""
        with self._lock:
            return self._expire_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _expire_locked(self, now: float) -> int:
        stale = [
            key
            for key, job in self._jobs.items()
            if job.finished_at is not None and now - job.finished_at > self._ttl
        ]
        for key in stale:
            del self._jobs[key]
        return len(stale)

    def _evict_locked(self) -> None:
        for key, job in self._jobs.items():
            if job.status.finished:
                del self._jobs[key]
                return
        key, _ = self._jobs.popitem(last=False)
        logger.warning("Status registry full of active jobs, evicted %s", key)
