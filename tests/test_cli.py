"""Tests for the command line status output."""

import asyncio
import contextlib
import logging

import pytest

from pnl_indexer.__main__ import (
    DEFAULT_LOG_LINES,
    _log_progress,
    build_parser,
    log_buffer,
    status_report,
)
from pnl_indexer.indexer.status import JobStatus, JobStatusRegistry


@pytest.fixture
def cli_logger():
    """Route ``pnl_indexer`` records into the CLI log buffer."""
    package_logger = logging.getLogger("pnl_indexer")
    previous_level = package_logger.level
    package_logger.setLevel(logging.INFO)
    package_logger.addHandler(log_buffer)
    log_buffer.clear()
    yield logging.getLogger("pnl_indexer.cli_test")
    package_logger.removeHandler(log_buffer)
    package_logger.setLevel(previous_level)
    log_buffer.clear()


class TestStatusReport:
    def test_includes_jobs_and_recent_logs(self, cli_logger: logging.Logger) -> None:
        registry = JobStatusRegistry()
        registry.start(("0xwallet", "0xtoken"), status=JobStatus.RUNNING)
        for page in range(3):
            cli_logger.warning("page %d skipped", page)

        report = status_report(registry, log_lines=2)

        (job,) = report["jobs"]
        assert job["status"] == "running"
        assert job["eta"] == "calculating..."
        assert [entry["message"] for entry in report["logs"]] == [
            "page 1 skipped",
            "page 2 skipped",
        ]
        assert report["logs"][0]["level"] == "WARNING"
        assert report["logs"][0]["logger"] == "pnl_indexer.cli_test"

    def test_finished_jobs_have_no_eta(self, cli_logger: logging.Logger) -> None:
        registry = JobStatusRegistry()
        registry.start(("0xwallet", "0xtoken"))
        registry.finish(("0xwallet", "0xtoken"), JobStatus.FAILED, "boom")

        report = status_report(registry, log_lines=0)

        assert report["jobs"][0]["eta"] is None
        assert report["jobs"][0]["error"] == "boom"
        assert report["logs"] == []


class TestProgressLogging:
    @pytest.mark.asyncio
    async def test_logs_only_active_jobs(self, cli_logger: logging.Logger) -> None:
        registry = JobStatusRegistry()
        registry.start(("*", "0xtoken"), status=JobStatus.RUNNING)
        registry.start(("0xwallet", "0xtoken"), status=JobStatus.RUNNING)
        registry.finish(("0xwallet", "0xtoken"), JobStatus.COMPLETED)

        task = asyncio.create_task(_log_progress(registry, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

        messages = [entry.message for entry in log_buffer.get_logs()]
        assert any(
            m.startswith("*/0xtoken running") and m.endswith("ETA calculating...")
            for m in messages
        )
        assert not any(m.startswith("0xwallet/") for m in messages)


class TestParser:
    def test_log_lines_option(self) -> None:
        parser = build_parser()

        assert parser.parse_args(["sync-token", "0xtoken"]).log_lines == DEFAULT_LOG_LINES
        args = parser.parse_args(["index-wallet", "0xwallet", "0xtoken", "--log-lines", "5"])
        assert args.log_lines == 5
