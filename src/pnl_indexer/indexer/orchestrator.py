"""Wallet indexing orchestrator.

This module provides the WalletIndexer that turns indexing triggers into
background jobs: ingest the wallet's swaps for a token, recompute its FIFO
position, advance its sync cursor and report the resulting PnL into the
contest registration.

Job flow:
    index_wallet() -> bounded queue -> worker -> swap ingestion -> position
    recompute -> cursor advance -> current PnL -> registration INDEXED
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from pnl_indexer.accounting.service import AccountingService
from pnl_indexer.gateway.providers import ProviderUnavailable
from pnl_indexer.indexer.status import (
    TOKEN_SYNC_WALLET,
    JobKey,
    JobStatus,
    JobStatusRegistry,
)
from pnl_indexer.ingestor.pipeline import IngestionResult, SwapIngestionPipeline
from pnl_indexer.storage.database import retry_on_conflict
from pnl_indexer.storage.models import RegistrationStatus
from pnl_indexer.storage.repos import (
    ContestRepository,
    PositionDTO,
    RegistrationRepository,
    TrackedTokenRepository,
    WalletRepository,
)

if TYPE_CHECKING:
    from pnl_indexer.config import Settings
    from pnl_indexer.gateway.gateway import ChainGateway
    from pnl_indexer.pricing import PriceService
    from pnl_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_QUEUE_SIZE = 1000
DEFAULT_MAX_CONCURRENT_UPSTREAM = 2
DEFAULT_JOB_TIMEOUT_SECONDS = 300.0
STOPPED_ERROR = "indexer stopped"


class IndexerError(Exception):
    """Base exception for indexing errors."""


class JobTimeout(IndexerError):
    """Raised when a job exceeded the overall indexing timeout."""


class IndexerQueueFull(IndexerError):
    """Raised when the job queue cannot take another trigger."""


class IndexerNotRunning(IndexerError):
    """Raised when triggering an indexer that has not been started."""


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    jobs_enqueued: int = 0
    jobs_joined: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_timed_out: int = 0
    last_error: str | None = None


@dataclass(frozen=True)
class IndexAck:
    """Immediate answer to an indexing trigger."""

    wallet_address: str
    token_address: str
    registration_id: int | None
    status: RegistrationStatus
    joined: bool


@dataclass
class JobOutcome:
    """What a finished job produced."""

    wallet_address: str
    token_address: str
    status: JobStatus
    position: PositionDTO | None = None
    current_price: Decimal | None = None
    current_pnl: Decimal | None = None
    ingestion: IngestionResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def raise_for_status(self) -> None:
        """Raise the matching indexer exception for a failed job."""
        if self.status == JobStatus.TIMED_OUT:
            raise JobTimeout(self.error or "indexing timed out")
        if self.status == JobStatus.FAILED:
            raise IndexerError(self.error or "indexing failed")


@dataclass
class TokenSyncResult:
    token_address: str
    from_block: int
    ingestion: IngestionResult
    positions_recomputed: int = 0
    wallets: set[str] = field(default_factory=set)


@dataclass
class ContestRecalculation:
    contest_id: int
    token_address: str
    current_price: Decimal | None
    updated: int = 0
    skipped: int = 0
    errors: int = 0


@dataclass
class _IndexRequest:
    key: JobKey
    registration_ids: list[int]
    future: asyncio.Future[JobOutcome]

    def add_registration(self, registration_id: int | None) -> None:
        if registration_id is not None and registration_id not in self.registration_ids:
            self.registration_ids.append(registration_id)


@dataclass
class _JobResult:
    position: PositionDTO
    ingestion: IngestionResult
    current_price: Decimal | None
    current_pnl: Decimal


class WalletIndexer:
    """Background indexer for (wallet, token) pairs.

    Triggers are single-flight per pair: a trigger for a pair with a job in
    flight joins that job instead of queueing another pass. Jobs run on a
    fixed pool of worker tasks reading a bounded queue, and a semaphore
    caps how many of them talk to the swap feed at once.

    Example:
        ```python
        from pnl_indexer.config import get_settings
        from pnl_indexer.indexer import WalletIndexer

        async with WalletIndexer.from_settings(get_settings()) as indexer:
            ack = await indexer.index_wallet("0xwallet", "0xtoken", registration_id=7)
            outcome = await indexer.wait_for("0xwallet", "0xtoken")
            print(outcome.status, outcome.current_pnl)
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        pipeline: SwapIngestionPipeline,
        *,
        accounting: AccountingService | None = None,
        prices: PriceService | None = None,
        gateway: ChainGateway | None = None,
        registry: JobStatusRegistry | None = None,
        workers: int = DEFAULT_WORKERS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        max_concurrent_upstream: int = DEFAULT_MAX_CONCURRENT_UPSTREAM,
        job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
        default_genesis_block: int = 0,
        persist_retries: int = 3,
        stale_sweep_interval_seconds: float | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            db: Database manager for the ledger, cursors and registrations.
            pipeline: Swap ingestion pipeline (already wired to a trade sink).
            accounting: Position recompute service. Built from ``db`` if omitted.
            prices: Current price source. Realized PnL only when omitted.
            gateway: Chain gateway used to pin each job to the current head block.
            registry: Job status registry. A private one is created if omitted.
            workers: Number of worker tasks.
            queue_size: Maximum queued jobs.
            max_concurrent_upstream: Maximum concurrent ingestion runs.
            job_timeout_seconds: Overall per-job timeout.
            default_genesis_block: Start block when nothing else is known.
            persist_retries: Retries for conflicting registration writes.
            stale_sweep_interval_seconds: How often to fail registrations left
                INDEXING past the job timeout. No background sweep when None;
                :meth:`stop` sweeps once either way.
        """
        self._db = db
        self._pipeline = pipeline
        self._accounting = accounting or AccountingService(db, persist_retries=persist_retries)
        self._prices = prices
        self._gateway = gateway
        self._registry = registry or JobStatusRegistry()
        self._worker_count = workers
        self._queue_size = queue_size
        self._upstream = asyncio.Semaphore(max_concurrent_upstream)
        self._job_timeout = job_timeout_seconds
        self._default_genesis_block = default_genesis_block
        self._persist_retries = persist_retries
        self._sweep_interval = stale_sweep_interval_seconds

        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()
        self._queue: asyncio.Queue[_IndexRequest] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._sweeper: asyncio.Task[None] | None = None
        self._inflight: dict[JobKey, _IndexRequest] = {}
        self._closers: list[Callable[[], Awaitable[Any]]] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> WalletIndexer:
        """Wire every collaborator from settings.

        The indexer owns what it builds here and closes it on :meth:`stop`.
        """
        from redis.asyncio import Redis

        from pnl_indexer.gateway.gateway import ChainGateway
        from pnl_indexer.ingestor.feed import SwapFeedClient
        from pnl_indexer.ingestor.pipeline import database_trade_sink
        from pnl_indexer.pricing import PriceService
        from pnl_indexer.storage.database import DatabaseManager

        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
        db = DatabaseManager(settings.database.url, echo=settings.database.echo)
        api_key = settings.swap_feed.api_key
        feed = SwapFeedClient(
            url=settings.swap_feed.url,
            api_key=api_key.get_secret_value() if api_key else None,
            network=settings.swap_feed.network,
            timeout_seconds=settings.swap_feed.timeout_seconds,
        )
        pipeline = SwapIngestionPipeline.from_settings(
            settings.swap_feed,
            feed,
            sink=database_trade_sink(db, retries=settings.indexer.persist_retries),
        )
        gateway = ChainGateway.from_settings(settings.chain, redis=redis)
        prices = PriceService.from_settings(settings.pricing, db, redis=redis)

        indexer = cls(
            db,
            pipeline,
            prices=prices,
            gateway=gateway,
            registry=JobStatusRegistry(
                max_entries=settings.indexer.status_max_entries,
                ttl_seconds=settings.indexer.status_ttl_seconds,
            ),
            workers=settings.indexer.workers,
            queue_size=settings.indexer.queue_size,
            max_concurrent_upstream=settings.indexer.max_concurrent_upstream,
            job_timeout_seconds=settings.indexer.job_timeout_seconds,
            default_genesis_block=settings.indexer.default_genesis_block,
            persist_retries=settings.indexer.persist_retries,
            stale_sweep_interval_seconds=settings.indexer.stale_sweep_interval_seconds,
        )
        indexer._closers = [feed.close, prices.close, gateway.aclose, db.dispose_async]
        if redis is not None:
            indexer._closers.append(redis.aclose)
        return indexer

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def registry(self) -> JobStatusRegistry:
        return self._registry

    @property
    def gateway(self) -> ChainGateway | None:
        return self._gateway

    @property
    def is_running(self) -> bool:
        """Check if the indexer accepts triggers."""
        return self._state == IndexerState.RUNNING

    def in_flight(self, wallet_address: str, token_address: str) -> bool:
        return (wallet_address.lower(), token_address.lower()) in self._inflight

    async def start(self) -> None:
        """Start the worker pool.

        Raises:
            RuntimeError: If the indexer is already running.
        """
        if self._state != IndexerState.STOPPED:
            raise RuntimeError(f"Cannot start indexer in state {self._state}")

        self._state = IndexerState.STARTING
        logger.info("Starting wallet indexer with %d worker(s)...", self._worker_count)
        queue: asyncio.Queue[_IndexRequest] = asyncio.Queue(maxsize=self._queue_size)
        self._queue = queue
        self._workers = [
            asyncio.create_task(self._worker(i, queue), name=f"wallet-indexer-{i}")
            for i in range(self._worker_count)
        ]
        if self._sweep_interval is not None:
            self._sweeper = asyncio.create_task(
                self._sweep_loop(self._sweep_interval), name="wallet-indexer-sweeper"
            )
        self._stats.started_at = datetime.now(UTC)
        self._state = IndexerState.RUNNING
        logger.info("Wallet indexer started")

    async def stop(self) -> None:
        """Stop the workers and release owned resources.

        Jobs still queued or running are resolved as FAILED and so are
        their registrations. Registrations left INDEXING past the job
        timeout by earlier failures are swept to FAILED as well.
        """
        if self._state == IndexerState.STOPPED:
            return

        self._state = IndexerState.STOPPING
        logger.info("Stopping wallet indexer...")

        tasks = [*self._workers, *([self._sweeper] if self._sweeper is not None else [])]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._workers = []
        self._sweeper = None

        for key, request in list(self._inflight.items()):
            self._registry.finish(key, JobStatus.FAILED, STOPPED_ERROR)
            for registration_id in request.registration_ids:
                await self._safe_registration_write(
                    "registration failed",
                    lambda repo, rid=registration_id: repo.mark_failed(rid, STOPPED_ERROR),
                )
            if not request.future.done():
                request.future.set_result(
                    JobOutcome(
                        wallet_address=key[0],
                        token_address=key[1],
                        status=JobStatus.FAILED,
                        error=STOPPED_ERROR,
                    )
                )
        self._inflight.clear()
        self._queue = None

        try:
            await self.fail_stale_registrations()
        except Exception as e:
            logger.error("Failed to sweep stale registrations on stop: %s", e)

        await self._cleanup()
        self._state = IndexerState.STOPPED
        logger.info("Wallet indexer stopped")

    async def _cleanup(self) -> None:
        for close in self._closers:
            try:
                await close()
            except Exception as e:
                logger.warning("Error while releasing indexer resource: %s", e)
        self._closers = []
        logger.debug("Resources cleaned up")

    async def fail_stale_registrations(self) -> int:
        """Mark registrations stuck in INDEXING for longer than the job timeout as FAILED.

        Registrations of jobs still queued or running here are left alone.

        Returns:
            Number of registrations marked FAILED.
        """
        older_than = datetime.now(UTC) - timedelta(seconds=self._job_timeout)
        active = [rid for request in self._inflight.values() for rid in request.registration_ids]
        error = f"Indexing did not finish within {self._job_timeout:g}s"
        failed = await self._write(
            "stale registrations",
            lambda session: RegistrationRepository(session).fail_stale(
                older_than, error, exclude_ids=active
            ),
        )
        if failed:
            logger.warning("Marked %d stale INDEXING registration(s) as FAILED", failed)
        return int(failed)

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.fail_stale_registrations()
            except Exception as e:
                logger.error("Stale registration sweep failed: %s", e)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def index_wallet(
        self,
        wallet_address: str,
        token_address: str,
        *,
        contest_id: int | None = None,
        registration_id: int | None = None,
    ) -> IndexAck:
        """Trigger indexing of a wallet on a token and return immediately.

        The registration (when given) moves to INDEXING before the job is
        queued, including from FAILED. An INDEXED registration stays INDEXED
        and only gets its PnL refreshed when the job completes.

        Args:
            wallet_address: Wallet to index.
            token_address: Tracked token.
            contest_id: Contest the trigger comes from. When given, the
                contest must exist and run on ``token_address``, and the
                registration must belong to it.
            registration_id: Registration that receives the resulting PnL.

        Returns:
            Acknowledgement; ``joined`` is True when a job for the pair was
            already in flight.

        Raises:
            IndexerNotRunning: If the indexer was not started.
            IndexerError: If the contest or registration does not match the trigger.
            IndexerQueueFull: If the queue is full.
        """
        if not self.is_running or self._queue is None:
            raise IndexerNotRunning("Wallet indexer is not running")

        key = (wallet_address.lower(), token_address.lower())
        status = RegistrationStatus.INDEXING
        await self._check_trigger(key, contest_id, registration_id)
        if registration_id is not None:
            moved = await self._registration_write(
                "registration indexing",
                lambda repo: repo.mark_indexing(registration_id),
            )
            if not moved:
                status = await self._registration_status(registration_id)

        existing = self._inflight.get(key)
        if existing is not None:
            existing.add_registration(registration_id)
            job = self._registry.get(key)
            if job is not None:
                self._registry.update(key, joined=job.joined + 1)
            self._stats.jobs_joined += 1
            logger.debug("Joined in-flight indexing job for %s/%s", *key)
            return IndexAck(
                wallet_address=key[0],
                token_address=key[1],
                registration_id=registration_id,
                status=status,
                joined=True,
            )

        request = _IndexRequest(
            key=key,
            registration_ids=[registration_id] if registration_id is not None else [],
            future=asyncio.get_running_loop().create_future(),
        )
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull as e:
            if registration_id is not None:
                await self._registration_write(
                    "registration error",
                    lambda repo: repo.record_error(registration_id, "indexing queue full"),
                )
            raise IndexerQueueFull(
                f"Indexing queue is full ({self._queue_size} jobs); retry later"
            ) from e

        self._inflight[key] = request
        self._registry.start(key)
        self._stats.jobs_enqueued += 1
        logger.info("Queued indexing job for %s/%s", *key)
        return IndexAck(
            wallet_address=key[0],
            token_address=key[1],
            registration_id=registration_id,
            status=status,
            joined=False,
        )

    async def _check_trigger(
        self, key: JobKey, contest_id: int | None, registration_id: int | None
    ) -> None:
        wallet, token = key
        async with self._db.get_async_session() as session:
            if contest_id is not None:
                contest = await ContestRepository(session).get(contest_id)
                if contest is None:
                    raise IndexerError(f"Contest {contest_id} does not exist")
                if contest.token_address.lower() != token:
                    raise IndexerError(
                        f"Contest {contest_id} runs on {contest.token_address}, not {token}"
                    )
            if registration_id is None:
                return
            registration = await RegistrationRepository(session).get(registration_id)
        if registration is None:
            raise IndexerError(f"Registration {registration_id} does not exist")
        if registration.wallet_address.lower() != wallet:
            raise IndexerError(
                f"Registration {registration_id} belongs to {registration.wallet_address}"
            )
        if contest_id is not None and registration.contest_id != contest_id:
            raise IndexerError(
                f"Registration {registration_id} is not part of contest {contest_id}"
            )

    async def _registration_status(self, registration_id: int) -> RegistrationStatus:
        async with self._db.get_async_session() as session:
            registration = await RegistrationRepository(session).get(registration_id)
        if registration is None:
            raise IndexerError(f"Registration {registration_id} does not exist")
        return registration.status

    async def wait_for(self, wallet_address: str, token_address: str) -> JobOutcome:
        """Wait for the in-flight job of a pair.

        Raises:
            IndexerError: If no job is in flight for the pair.
        """
        key = (wallet_address.lower(), token_address.lower())
        request = self._inflight.get(key)
        if request is None:
            raise IndexerError(f"No indexing job in flight for {key[0]}/{key[1]}")
        return await asyncio.shield(request.future)

    async def index_wallet_and_wait(
        self,
        wallet_address: str,
        token_address: str,
        *,
        contest_id: int | None = None,
        registration_id: int | None = None,
    ) -> JobOutcome:
        """Trigger (or join) a job and wait for its outcome."""
        await self.index_wallet(
            wallet_address,
            token_address,
            contest_id=contest_id,
            registration_id=registration_id,
        )
        return await self.wait_for(wallet_address, token_address)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, worker_id: int, queue: asyncio.Queue[_IndexRequest]) -> None:
        while True:
            request = await queue.get()
            try:
                await self._process(request)
            except Exception as e:
                logger.exception("Worker %d failed to process %s: %s", worker_id, request.key, e)
            finally:
                queue.task_done()

    async def _process(self, request: _IndexRequest) -> None:
        key = request.key
        wallet, token = key
        self._registry.update(key, status=JobStatus.RUNNING)

        outcome: JobOutcome
        try:
            result = await asyncio.wait_for(self._run_job(request), timeout=self._job_timeout)
        except TimeoutError:
            error = f"Indexing timed out after {self._job_timeout:g}s"
            logger.error("Indexing %s/%s: %s", wallet, token, error)
            self._release(request)
            for registration_id in request.registration_ids:
                await self._safe_registration_write(
                    "registration failed",
                    lambda repo, rid=registration_id: repo.mark_failed(rid, error),
                )
            self._registry.finish(key, JobStatus.TIMED_OUT, error)
            self._stats.jobs_timed_out += 1
            self._stats.last_error = error
            outcome = JobOutcome(wallet, token, JobStatus.TIMED_OUT, error=error)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.exception("Indexing %s/%s failed: %s", wallet, token, e)
            self._release(request)
            for registration_id in request.registration_ids:
                await self._safe_registration_write(
                    "registration error",
                    lambda repo, rid=registration_id: repo.record_error(rid, error),
                )
            self._registry.finish(key, JobStatus.FAILED, error)
            self._stats.jobs_failed += 1
            self._stats.last_error = error
            outcome = JobOutcome(wallet, token, JobStatus.FAILED, error=error)
        else:
            self._release(request)
            for registration_id in request.registration_ids:
                await self._safe_registration_write(
                    "registration pnl",
                    lambda repo, rid=registration_id: repo.record_pnl(
                        rid, current_pnl=result.current_pnl
                    ),
                )
            self._registry.finish(key, JobStatus.COMPLETED)
            self._stats.jobs_completed += 1
            outcome = JobOutcome(
                wallet,
                token,
                JobStatus.COMPLETED,
                position=result.position,
                current_price=result.current_price,
                current_pnl=result.current_pnl,
                ingestion=result.ingestion,
            )
            logger.info(
                "Indexed %s/%s: %d new trade(s), realized=%s current_pnl=%s",
                wallet,
                token,
                result.ingestion.trades_inserted,
                result.position.realized_pnl_usd,
                result.current_pnl,
            )

        if not request.future.done():
            request.future.set_result(outcome)

    def _release(self, request: _IndexRequest) -> None:
        if self._inflight.get(request.key) is request:
            del self._inflight[request.key]

    async def _run_job(self, request: _IndexRequest) -> _JobResult:
        wallet, token = request.key

        async with self._upstream:
            from_block = await self._resolve_start_block(wallet, token)
            to_block = await self._head_block()
            ingestion = await self._pipeline.run(
                token,
                wallet_address=wallet,
                from_block=from_block,
                to_block=to_block,
                progress=lambda r: self._report_progress(request.key, r),
            )

        position = await self._accounting.recompute_position(wallet, token)

        cursor = ingestion.safe_cursor_block()
        if cursor is not None and cursor >= from_block:
            await self._write(
                "wallet cursor",
                lambda session: WalletRepository(session).advance_token_cursor(
                    wallet, token, cursor
                ),
            )
        elif ingestion.skipped_pages:
            logger.warning(
                "Not advancing cursor of %s/%s: %d page(s) skipped",
                wallet,
                token,
                len(ingestion.skipped_pages),
            )

        current_price = await self._current_price(token)
        current_pnl = AccountingService.total_pnl(position, current_price)
        return _JobResult(
            position=position,
            ingestion=ingestion,
            current_price=current_price,
            current_pnl=current_pnl,
        )

    def _report_progress(self, key: JobKey, result: IngestionResult) -> None:
        self._registry.update(
            key,
            pages_fetched=result.pages_fetched,
            api_calls=result.api_calls,
            swaps_seen=result.swaps_seen,
            swaps_skipped=result.swaps_skipped,
            trades_inserted=result.trades_inserted,
        )

    async def _resolve_start_block(self, wallet_address: str, token_address: str) -> int:
        async with self._db.get_async_session() as session:
            cursor = await WalletRepository(session).get_token_cursor(wallet_address, token_address)
            if cursor is not None:
                return cursor + 1
            token = await TrackedTokenRepository(session).get(token_address)
        if token is not None and token.genesis_block is not None:
            return token.genesis_block
        return self._default_genesis_block

    async def _head_block(self) -> int | None:
        if self._gateway is None:
            return None
        try:
            return await self._gateway.get_current_block_number()
        except ProviderUnavailable as e:
            logger.warning("Could not read head block, indexing open-ended: %s", e)
            return None

    async def _current_price(self, token_address: str) -> Decimal | None:
        if self._prices is None:
            return None
        return await self._prices.get_current_price(token_address)

    async def _write(
        self, description: str, op: Callable[[Any], Awaitable[Any]]
    ) -> Any:
        async def _attempt() -> Any:
            async with self._db.get_async_session() as session:
                return await op(session)

        return await retry_on_conflict(
            _attempt, retries=self._persist_retries, description=description
        )

    async def _registration_write(
        self, description: str, op: Callable[[RegistrationRepository], Awaitable[bool]]
    ) -> bool:
        return bool(
            await self._write(description, lambda session: op(RegistrationRepository(session)))
        )

    async def _safe_registration_write(
        self, description: str, op: Callable[[RegistrationRepository], Awaitable[bool]]
    ) -> None:
        try:
            changed = await self._registration_write(description, op)
        except Exception as e:
            logger.error("Failed to write %s: %s", description, e)
            return
        if not changed:
            logger.warning("Skipped %s: registration is not in the expected state", description)

    # ------------------------------------------------------------------
    # Token-wide maintenance
    # ------------------------------------------------------------------

    async def sync_token(self, token_address: str) -> TokenSyncResult:
        """Ingest every swap of a token since its cursor and recompute touched positions.

        Runs inline (not through the queue) and advances the token-wide
        cursor when the whole range was read.
        """
        token = token_address.lower()
        key = (TOKEN_SYNC_WALLET, token)
        self._registry.start(key, status=JobStatus.RUNNING)

        try:
            async with self._db.get_async_session() as session:
                tracked = await TrackedTokenRepository(session).get(token)
            if tracked is None:
                raise IndexerError(f"Token {token} is not tracked")
            if tracked.last_synced_block is not None:
                from_block = tracked.last_synced_block + 1
            elif tracked.genesis_block is not None:
                from_block = tracked.genesis_block
            else:
                from_block = self._default_genesis_block

            async with self._upstream:
                to_block = await self._head_block()
                ingestion = await self._pipeline.run(
                    token,
                    from_block=from_block,
                    to_block=to_block,
                    progress=lambda r: self._report_progress(key, r),
                )

            sync = TokenSyncResult(token_address=token, from_block=from_block, ingestion=ingestion)
            sync.wallets = {t.wallet_address for t in ingestion.trades}

            async def _ensure_wallets(session: Any) -> None:
                repo = WalletRepository(session)
                for wallet in sorted(ingestion.observed_wallets):
                    await repo.ensure(wallet)

            await self._write("wallet registry", _ensure_wallets)

            self._registry.update(key, items_total=len(sync.wallets))
            for wallet in sorted(sync.wallets):
                await self._accounting.recompute_position(wallet, token)
                sync.positions_recomputed += 1
                self._registry.update(key, items_done=sync.positions_recomputed)

            cursor = ingestion.safe_cursor_block()
            if cursor is not None and cursor >= from_block:
                await self._write(
                    "token cursor",
                    lambda session: TrackedTokenRepository(session).advance_sync_cursor(
                        token, cursor
                    ),
                )
        except Exception as e:
            self._registry.finish(key, JobStatus.FAILED, f"{type(e).__name__}: {e}")
            raise

        self._registry.finish(key, JobStatus.COMPLETED)
        logger.info(
            "Synced %s from block %d: %d new trade(s), %d position(s) recomputed, %d wallet(s) seen",
            token,
            from_block,
            ingestion.trades_inserted,
            sync.positions_recomputed,
            len(ingestion.observed_wallets),
        )
        return sync

    async def recalculate_contest(self, contest_id: int) -> ContestRecalculation:
        """Recompute positions and PnL of every indexed registration of a contest.

        Nothing is re-ingested. Registrations that are not INDEXED are
        counted as skipped.

        Raises:
            IndexerError: If the contest does not exist.
        """
        async with self._db.get_async_session() as session:
            contest = await ContestRepository(session).get(contest_id)
            if contest is None:
                raise IndexerError(f"Contest {contest_id} does not exist")
            registrations = await RegistrationRepository(session).list_by_contest(contest_id)

        token = contest.token_address.lower()
        price = await self._current_price(token)
        summary = ContestRecalculation(contest_id=contest_id, token_address=token, current_price=price)

        for registration in registrations:
            if registration.status != RegistrationStatus.INDEXED:
                summary.skipped += 1
                continue
            try:
                position = await self._accounting.recompute_position(
                    registration.wallet_address, token
                )
                pnl = AccountingService.total_pnl(position, price)
                await self._registration_write(
                    "registration pnl",
                    lambda repo, rid=registration.id, value=pnl: repo.update_pnl(
                        rid, current_pnl=value
                    ),
                )
                summary.updated += 1
            except Exception as e:
                summary.errors += 1
                logger.error(
                    "Recalculating registration %d (%s) failed: %s",
                    registration.id,
                    registration.wallet_address,
                    e,
                )

        logger.info(
            "Recalculated contest %d: updated=%d skipped=%d errors=%d price=%s",
            contest_id,
            summary.updated,
            summary.skipped,
            summary.errors,
            price,
        )
        return summary

    async def __aenter__(self) -> WalletIndexer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
