"""Tests for the job status registry and the in-memory log buffer."""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from pnl_indexer.indexer.log_buffer import MemoryLogHandler
from pnl_indexer.indexer.status import (
    IndexingJob,
    JobStatus,
    JobStatusRegistry,
    format_time_remaining,
)


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestJobStatusRegistry:
    def test_start_update_finish(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        key = ("0xw", "0xt")

        registry.start(key)
        clock.now += 5
        registry.update(key, status=JobStatus.RUNNING, pages_fetched=2, trades_inserted=7)
        registry.finish(key, JobStatus.COMPLETED)

        job = registry.get(key)
        assert job is not None
        assert job.status == JobStatus.COMPLETED
        assert job.pages_fetched == 2
        assert job.trades_inserted == 7
        assert job.finished_at == clock.now
        assert registry.active() == []

    def test_get_returns_a_copy(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        registry.start(("0xw", "0xt"))

        copy = registry.get(("0xw", "0xt"))
        assert copy is not None
        copy.pages_fetched = 99

        assert registry.get(("0xw", "0xt")).pages_fetched == 0

    def test_unknown_field_is_rejected(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        registry.start(("0xw", "0xt"))

        with pytest.raises(AttributeError):
            registry.update(("0xw", "0xt"), nonsense=1)
        with pytest.raises(AttributeError):
            registry.update(("0xw", "0xt"), wallet_address="0xother")

    def test_update_missing_key(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        assert registry.update(("0xw", "0xt"), pages_fetched=1) is None
        assert registry.finish(("0xw", "0xt"), JobStatus.FAILED) is None

    def test_bounded_evicts_finished_first(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(max_entries=2, clock=clock)
        registry.start(("a", "t"))
        registry.start(("b", "t"))
        registry.finish(("b", "t"), JobStatus.COMPLETED)

        registry.start(("c", "t"))

        assert len(registry) == 2
        assert registry.get(("a", "t")) is not None
        assert registry.get(("b", "t")) is None

    def test_bounded_evicts_oldest_active_when_nothing_finished(
        self, clock: FakeClock, caplog
    ) -> None:
        registry = JobStatusRegistry(max_entries=2, clock=clock)
        registry.start(("a", "t"))
        registry.start(("b", "t"))

        with caplog.at_level(logging.WARNING):
            registry.start(("c", "t"))

        assert registry.get(("a", "t")) is None
        assert len(registry) == 2
        assert "evicted" in caplog.text

    def test_finished_jobs_expire(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(ttl_seconds=60, clock=clock)
        registry.start(("done", "t"))
        registry.finish(("done", "t"), JobStatus.FAILED, error="boom")
        registry.start(("running", "t"))

        clock.now += 61

        assert registry.expire() == 1
        assert registry.get(("done", "t")) is None
        assert registry.get(("running", "t")) is not None

    def test_restart_replaces_finished_job(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        registry.start(("w", "t"))
        registry.finish(("w", "t"), JobStatus.FAILED, error="boom")

        job = registry.start(("w", "t"))

        assert job.status == JobStatus.QUEUED
        assert job.error is None
        assert len(registry) == 1

    def test_snapshot_serializes(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        registry.start(("w", "t"), status=JobStatus.RUNNING)

        (entry,) = registry.snapshot()

        assert entry["status"] == "running"
        assert entry["wallet_address"] == "w"
        assert entry["started_at"].startswith("2023-11-14T")
        assert entry["finished_at"] is None

    def test_snapshot_reports_eta_of_active_jobs(self, clock: FakeClock) -> None:
        registry = JobStatusRegistry(clock=clock)
        registry.start(("*", "t"), status=JobStatus.RUNNING)
        registry.start(("w", "t"), status=JobStatus.RUNNING)
        registry.finish(("w", "t"), JobStatus.COMPLETED)
        clock.now += 10
        registry.update(("*", "t"), items_done=1, items_total=5)

        sync, done = registry.snapshot()

        assert sync["eta"] == "40s"
        assert done["eta"] is None

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError):
            JobStatusRegistry(max_entries=0)


class TestEstimatedTimeRemaining:
    def test_linear_estimate(self) -> None:
        job = IndexingJob(
            wallet_address="w",
            token_address="t",
            status=JobStatus.RUNNING,
            started_at=100.0,
            updated_at=100.0,
            items_done=25,
            items_total=100,
        )

        assert job.estimated_seconds_remaining(110.0) == pytest.approx(30.0)

    def test_unknown_without_progress(self) -> None:
        job = IndexingJob(
            wallet_address="w",
            token_address="t",
            status=JobStatus.RUNNING,
            started_at=100.0,
            updated_at=100.0,
        )

        assert job.estimated_seconds_remaining(200.0) is None

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [
            (None, "calculating..."),
            (44.2, "45s"),
            (180, "3m"),
            (7500, "2h 5m"),
        ],
    )
    def test_format_time_remaining(self, seconds, expected: str) -> None:
        assert format_time_remaining(seconds) == expected


class TestMemoryLogHandler:
    def _logger(self, handler: MemoryLogHandler) -> logging.Logger:
        logger = logging.getLogger("pnl_indexer.tests.log_buffer")
        logger.handlers = [handler]
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        return logger

    def test_keeps_last_entries_in_order(self) -> None:
        handler = MemoryLogHandler(capacity=3)
        logger = self._logger(handler)

        for i in range(5):
            logger.info("message %d", i)

        assert [e.message for e in handler.get_logs()] == ["message 2", "message 3", "message 4"]
        assert [e.message for e in handler.get_logs(limit=1)] == ["message 4"]
        assert handler.get_logs(limit=0) == []
        assert handler.get_logs()[0].level == "INFO"

    def test_logs_since(self) -> None:
        handler = MemoryLogHandler()
        logger = self._logger(handler)
        before = datetime.now(UTC) - timedelta(seconds=5)

        logger.warning("fresh")

        assert [e.message for e in handler.get_logs_since(before)] == ["fresh"]
        assert handler.get_logs_since(datetime.now(UTC) + timedelta(seconds=5)) == []

    def test_clear(self) -> None:
        handler = MemoryLogHandler()
        self._logger(handler).error("x")

        handler.clear()

        assert handler.get_logs() == []
