"""jobhost worker service entry point.

This module provides:
- BackgroundWorker: polls the job store, executes claimed jobs through the
  dispatcher and periodically sweeps jobs abandoned by crashed workers
- WorkerPool: runs several workers plus the recurring-job loop as asyncio
  tasks sharing one shutdown event
- run(): process entry point with SIGTERM/SIGINT handling
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, NoReturn

from jobhost.services import metrics as counters
from jobhost.services.errors import ConcurrencyError, StoreUnavailableError

if TYPE_CHECKING:
    from jobhost.core.config import WorkerSettings
    from jobhost.services.dispatcher import JobDispatcher
    from jobhost.services.job_store import JobStore
    from jobhost.services.metrics import JobMetrics
    from jobhost.worker.recurring import RecurringScheduler

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for one worker loop.

    Attributes:
        worker_id: Unique identifier recorded on claimed jobs.
        poll_interval: Seconds to wait when no job is due.
        visibility_timeout_seconds: Age after which a claimed job counts as abandoned.
        sweep_interval: Seconds between visibility-timeout sweeps.
        error_backoff: Seconds to pause after an unexpected loop error.
    """

    worker_id: str = field(default_factory=lambda: f"worker-{uuid.uuid4().hex[:8]}")
    poll_interval: float = 1.0
    visibility_timeout_seconds: float = 600
    sweep_interval: float = 60.0
    error_backoff: float = 1.0

    @classmethod
    def from_settings(cls, settings: WorkerSettings, index: int = 0) -> WorkerConfig:
        return cls(
            worker_id=f"{settings.id_prefix}-{index}-{uuid.uuid4().hex[:8]}",
            poll_interval=settings.poll_interval,
            visibility_timeout_seconds=settings.visibility_timeout_seconds,
            sweep_interval=settings.sweep_interval,
        )


class BackgroundWorker:
    """Processes jobs one at a time until shutdown is requested.

    Several workers (in one process or many) can share a store; claim_next
    guarantees each job goes to exactly one of them. The shutdown event is
    also handed to handlers as their cooperative cancellation signal, and
    an in-flight job always finishes before the loop exits.

    Example:
        worker = BackgroundWorker(store, dispatcher, metrics)
        task = asyncio.create_task(worker.start())
        ...
        await worker.stop()
        await task
    """

    def __init__(
        self,
        store: JobStore,
        dispatcher: JobDispatcher,
        metrics: JobMetrics,
        config: WorkerConfig | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.config = config or WorkerConfig()
        self._shutdown_event = asyncio.Event()
        self._started_at: datetime | None = None
        self._last_sweep: float | None = None
        self._jobs_processed = 0

    @property
    def jobs_processed(self) -> int:
        return self._jobs_processed

    async def start(self, shutdown_event: asyncio.Event | None = None) -> None:
        """Run the processing loop until shutdown is requested.

        Args:
            shutdown_event: Optional externally owned stop signal, e.g. one
                shared by every worker of a pool.
        """
        if shutdown_event is not None:
            self._shutdown_event = shutdown_event

        self._started_at = datetime.now(UTC)
        logger.info(
            "Worker starting: worker_id=%s, poll_interval=%ss",
            self.config.worker_id,
            self.config.poll_interval,
        )

        try:
            await self._run_loop()
        finally:
            logger.info(
                "Worker stopped: worker_id=%s, processed=%d, uptime=%s",
                self.config.worker_id,
                self._jobs_processed,
                self._get_uptime(),
            )

    async def stop(self) -> None:
        """Request graceful shutdown of the worker."""
        logger.info("Worker shutdown requested: worker_id=%s", self.config.worker_id)
        self._shutdown_event.set()

    async def run_once(self) -> bool:
        """Run one iteration: sweep if due, then claim and execute one job.

        Returns:
            True if a job was claimed and executed.
        """
        await self._sweep_if_due()

        record = await self.store.claim_next(self.config.worker_id)
        if record is None:
            return False

        self.metrics.increment(counters.CLAIMED)
        outcome = await self.dispatcher.execute(record, self._shutdown_event)
        self._jobs_processed += 1
        logger.debug(
            "Job processed: job_id=%s, worker_id=%s, outcome=%s",
            record.job_id,
            self.config.worker_id,
            outcome.value,
        )
        return True

    async def _run_loop(self) -> None:
        """Main processing loop; polls while idle, drains while busy."""
        while not self._shutdown_event.is_set():
            try:
                processed = await self.run_once()
            except StoreUnavailableError as e:
                self.metrics.increment(counters.STORE_ERRORS)
                logger.warning(
                    "Job store unavailable: worker_id=%s, error=%s",
                    self.config.worker_id,
                    e,
                )
                processed = False
            except ConcurrencyError as e:
                self.metrics.increment(counters.CONFLICTS)
                logger.warning(
                    "Job advanced by another worker: worker_id=%s, error=%s",
                    self.config.worker_id,
                    e,
                )
                processed = True
            except Exception as e:
                logger.exception("Error in worker loop: %s", e)
                await self._wait(self.config.error_backoff)
                continue

            if not processed:
                await self._wait(self.config.poll_interval)

    async def _sweep_if_due(self) -> None:
        """Reset abandoned jobs at most once per sweep_interval."""
        now = time.monotonic()
        if self._last_sweep is not None and now - self._last_sweep < self.config.sweep_interval:
            return
        self._last_sweep = now

        recovered = await self.store.recover_stale(self.config.visibility_timeout_seconds)
        if recovered:
            self.metrics.increment(counters.RECOVERED, recovered)

    async def _wait(self, seconds: float) -> None:
        """Sleep, waking early when shutdown is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)

    def _get_uptime(self) -> str:
        """Calculate worker uptime as a human-readable string."""
        if self._started_at is None:
            return "0s"
        delta = datetime.now(UTC) - self._started_at
        hours, remainder = divmod(int(delta.total_seconds()), 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"


class WorkerPool:
    """Runs workers and the recurring-job loop as tasks with a shared stop signal."""

    def __init__(
        self,
        workers: list[BackgroundWorker],
        recurring: RecurringScheduler | None = None,
        recurring_check_interval: float = 60.0,
        shutdown_timeout: float = 30.0,
    ) -> None:
        self.workers = workers
        self.recurring = recurring
        self.recurring_check_interval = recurring_check_interval
        self.shutdown_timeout = shutdown_timeout
        self.shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    async def start(self) -> None:
        """Spawn one task per worker, plus the recurring loop if configured."""
        from jobhost.worker.recurring import run_recurring_loop

        self._tasks = [
            asyncio.create_task(worker.start(self.shutdown_event), name=worker.config.worker_id)
            for worker in self.workers
        ]
        if self.recurring is not None:
            self._tasks.append(
                asyncio.create_task(
                    run_recurring_loop(
                        self.recurring,
                        check_interval=self.recurring_check_interval,
                        shutdown_event=self.shutdown_event,
                    ),
                    name="recurring",
                )
            )
        logger.info("Worker pool started: workers=%d", len(self.workers))

    async def stop(self) -> None:
        """Signal shutdown, wait up to shutdown_timeout, then cancel stragglers."""
        self.shutdown_event.set()
        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
        if pending:
            logger.warning(
                "Workers did not stop within timeout, forcing shutdown: pending=%d",
                len(pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Worker task failed: task=%s, error=%s",
                    task.get_name(),
                    task.exception(),
                )
        self._tasks = []
        logger.info("Worker pool stopped")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run until stop_event is set, then shut down gracefully."""
        await self.start()
        await stop_event.wait()
        await self.stop()


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event) -> None:
    """Async entry point: bootstrap components and run the pool.

    Args:
        shutdown_event: Event to signal shutdown request.
    """
    from jobhost.bootstrap import build_job_host
    from jobhost.db import close_engine

    host = build_job_host()
    pool = host.build_pool()
    try:
        await pool.run(shutdown_event)
    finally:
        await close_engine()
        logger.info("Final job metrics: %s", host.metrics.snapshot())


def run() -> NoReturn:
    """Run the worker process.

    This is the main entry point for the worker. It:
    - Loads and validates settings from JOBHOST_* environment variables
    - Sets up logging
    - Registers signal handlers for graceful shutdown
    - Runs the worker pool until signalled
    """
    global _shutdown_event

    from jobhost.core.settings import get_settings

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("jobhost worker starting...")

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.exception("Worker failed: %s", e)
        sys.exit(1)

    logger.info("jobhost worker shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
