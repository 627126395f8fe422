"""Ring buffer of recent log records for status views."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

MAX_LOGS = 1000


@dataclass(frozen=True)
class LogEntry:
    level: str
    logger: str
    message: str
    timestamp: datetime


class MemoryLogHandler(logging.Handler):
    """Keep the most recent ``capacity`` formatted records in memory.

    Example:
        ```python
        handler = MemoryLogHandler()
        logging.getLogger("pnl_indexer").addHandler(handler)
        for entry in handler.get_logs(limit=50):
            print(entry.level, entry.message)
        ```
    """

    def __init__(self, capacity: int = MAX_LOGS, level: int = logging.NOTSET) -> None:
        super().__init__(level)
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._entries_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                level=record.levelname,
                logger=record.name,
                message=self.format(record),
                timestamp=datetime.fromtimestamp(record.created, tz=UTC),
            )
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def get_logs(self, limit: int | None = None) -> list[LogEntry]:
        """Oldest-first list of the last ``limit`` entries (all when None)."""
        with self._entries_lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def get_logs_since(self, since: datetime) -> list[LogEntry]:
        with self._entries_lock:
            return [e for e in self._entries if e.timestamp > since]

    def clear(self) -> None:
        with self._entries_lock:
            self._entries.clear()
