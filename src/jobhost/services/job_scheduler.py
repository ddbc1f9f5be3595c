"""Producer-facing facade for creating jobs.

Application code depends on JobScheduler rather than the dispatcher, so the
execution side (workers, retry routing) stays out of its import graph.

Usage:
    job_id = await scheduler.enqueue("send-email", SendEmail(to="a@example.com"))
    job_id = await scheduler.schedule("cleanup", {}, delay=timedelta(hours=1))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from jobhost.services.job_record import JobPriority

if TYPE_CHECKING:
    import uuid
    from datetime import timedelta

    from jobhost.services.dispatcher import JobDispatcher


class JobScheduler:
    """Thin facade over JobDispatcher.enqueue/schedule."""

    def __init__(self, dispatcher: JobDispatcher) -> None:
        self._dispatcher = dispatcher

    async def enqueue(
        self,
        handler_name: str,
        payload: Any = None,
        max_attempts: int | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        retry_delay_seconds: float = 0,
    ) -> uuid.UUID:
        """Create a job that runs as soon as a worker is free."""
        return await self._dispatcher.enqueue(
            handler_name,
            payload,
            max_attempts=max_attempts,
            priority=priority,
            retry_delay_seconds=retry_delay_seconds,
        )

    async def schedule(
        self,
        handler_name: str,
        payload: Any = None,
        delay: timedelta | float = 0,
        max_attempts: int | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        retry_delay_seconds: float = 0,
    ) -> uuid.UUID:
        """Create a job that becomes due after `delay` (timedelta or seconds)."""
        return await self._dispatcher.schedule(
            handler_name,
            payload,
            delay=delay,
            max_attempts=max_attempts,
            priority=priority,
            retry_delay_seconds=retry_delay_seconds,
        )
