"""Recurring jobs: periodic enqueueing of fixed job definitions.

Handler modules declare recurring work as RecurringJob entries; the
recurring loop ticks at a fixed check interval and enqueues each
definition once its interval has elapsed. A definition is skipped while a
Pending or Processing job for the same handler exists, so a slow handler
never piles up copies of itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from jobhost.services.errors import JobError
from jobhost.services.job_record import JobPriority, utc_now

if TYPE_CHECKING:
    from jobhost.services.job_scheduler import JobScheduler
    from jobhost.services.job_store import Clock, JobStore

logger = logging.getLogger(__name__)


@dataclass
class RecurringJob:
    """Definition of a periodic job.

    Attributes:
        handler_name: Registered handler to enqueue.
        interval: Time between enqueues.
        payload: Payload passed on every run.
        priority: Claim priority of the enqueued jobs.
        max_attempts: Attempts per run; None uses the configured default.
        enabled: Whether this definition is active.
        last_scheduled: When a job was last enqueued for it.
    """

    handler_name: str
    interval: timedelta
    payload: Any = field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    max_attempts: int | None = None
    enabled: bool = True
    last_scheduled: datetime | None = None

    def __post_init__(self) -> None:
        if self.interval <= timedelta(0):
            msg = f"interval must be positive, got {self.interval}"
            raise ValueError(msg)

    def is_due(self, now: datetime) -> bool:
        if self.last_scheduled is None:
            return True
        return now >= self.last_scheduled + self.interval


class RecurringScheduler:
    """Enqueues due recurring definitions through the producer facade.

    Example:
        recurring = RecurringScheduler(job_scheduler, store)
        recurring.add(RecurringJob("purge-sessions", timedelta(hours=1)))
        await recurring.tick()
    """

    def __init__(
        self,
        job_scheduler: JobScheduler,
        store: JobStore,
        jobs: list[RecurringJob] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._job_scheduler = job_scheduler
        self._store = store
        self._jobs: list[RecurringJob] = list(jobs or [])
        self._clock = clock

    @property
    def jobs(self) -> list[RecurringJob]:
        return list(self._jobs)

    def add(self, job: RecurringJob) -> None:
        self._jobs.append(job)
        logger.debug(
            "Added recurring job: handler_name=%s, interval=%s",
            job.handler_name,
            job.interval,
        )

    async def tick(self) -> list[str]:
        """Enqueue every definition that is due.

        Returns:
            Handler names that were enqueued.
        """
        now = self._clock()
        enqueued: list[str] = []

        for job in self._jobs:
            if not job.enabled or not job.is_due(now):
                continue

            if await self._store.has_active(job.handler_name):
                logger.debug(
                    "Skipping recurring job - active job exists: handler_name=%s",
                    job.handler_name,
                )
                continue

            try:
                await self._job_scheduler.enqueue(
                    job.handler_name,
                    job.payload,
                    max_attempts=job.max_attempts,
                    priority=job.priority,
                )
            except JobError as e:
                logger.exception(
                    "Failed to enqueue recurring job: handler_name=%s, error=%s",
                    job.handler_name,
                    e,
                )
                continue

            job.last_scheduled = now
            enqueued.append(job.handler_name)
            logger.info(
                "Recurring job enqueued: handler_name=%s, next_due=%s",
                job.handler_name,
                (now + job.interval).isoformat(),
            )

        return enqueued


async def run_recurring_loop(
    scheduler: RecurringScheduler,
    check_interval: float = 60.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Tick the recurring scheduler until shutdown.

    Args:
        scheduler: Scheduler holding the recurring definitions.
        check_interval: Seconds between ticks.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info(
        "Recurring scheduler starting: check_interval=%ss, jobs=%d",
        check_interval,
        len(scheduler.jobs),
    )

    while not shutdown_event.is_set():
        try:
            enqueued = await scheduler.tick()
            if enqueued:
                logger.debug("Recurring jobs enqueued: %s", enqueued)
        except Exception as e:
            logger.exception("Error in recurring scheduler loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Recurring scheduler stopped")
