"""Job dispatcher: creates job records and executes claimed ones.

enqueue()/schedule() turn producer requests into Pending records.
execute() runs a claimed record through its registered handler and routes
the outcome:

    success                          -> Completed
    failure, attempts remain         -> Failed -> Pending (now + backoff)
    failure, attempts exhausted      -> Failed -> Dead
    unknown handler / bad payload    -> Failed -> Dead (no retry can fix it)

Backoff: delay = min(max(retry_delay_hint, base) * 2 ** attempt, max_delay).
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from jobhost.services import metrics as counters
from jobhost.services.errors import (
    ConcurrencyError,
    HandlerExecutionError,
    PayloadDeserializationError,
    UnknownHandlerError,
)
from jobhost.services.handler_registry import serialize_payload
from jobhost.services.job_record import JobPriority, JobRecord, as_utc, utc_now

if TYPE_CHECKING:
    import uuid

    from jobhost.core.config import RetrySettings
    from jobhost.services.handler_registry import HandlerRegistry, JobResult
    from jobhost.services.job_store import Clock, JobStore
    from jobhost.services.metrics import JobMetrics

logger = logging.getLogger(__name__)


class JobOutcome(enum.Enum):
    """What execute() did with a claimed job."""

    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    # Another worker or the stale-job sweep advanced the job first
    LOST = "lost"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff bounded by max_delay_seconds.

    Attributes:
        base_delay_seconds: Seed used when a job has no retry delay hint.
        max_delay_seconds: Cap applied to every computed delay.
    """

    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
        )

    def next_delay(self, attempt: int, retry_delay_hint: float = 0) -> timedelta:
        """Delay before the next attempt, given the failed attempts so far.

        Args:
            attempt: Attempt count before the failure being handled (0-based).
            retry_delay_hint: Per-job seed; values below the base are raised to it.
        """
        seed = max(retry_delay_hint, self.base_delay_seconds)
        # Cap the exponent too, so huge attempt counts cannot overflow floats
        seconds = min(seed * 2 ** min(attempt, 32), self.max_delay_seconds)
        return timedelta(seconds=seconds)


def _as_delay(delay: timedelta | float) -> timedelta:
    if not isinstance(delay, timedelta):
        delay = timedelta(seconds=delay)
    if delay < timedelta(0):
        msg = f"delay must be >= 0, got {delay}"
        raise ValueError(msg)
    return delay


class JobDispatcher:
    """Turns requests into job records and claimed records into handler calls.

    Attributes:
        store: Job store holding every record.
        registry: Handler registry used to validate names and resolve invokers.
        metrics: Counters incremented for every outcome.
        retry_policy: Backoff policy for retryable failures.
        default_max_attempts: Used when enqueue/schedule get no max_attempts.
    """

    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry,
        metrics: JobMetrics,
        retry_policy: RetryPolicy | None = None,
        default_max_attempts: int = 3,
        clock: Clock = utc_now,
    ) -> None:
        if default_max_attempts < 1:
            msg = f"default_max_attempts must be >= 1, got {default_max_attempts}"
            raise ValueError(msg)
        self.store = store
        self.registry = registry
        self.metrics = metrics
        self.retry_policy = retry_policy or RetryPolicy()
        self.default_max_attempts = default_max_attempts
        self._clock = clock

    async def enqueue(
        self,
        handler_name: str,
        payload: Any = None,
        max_attempts: int | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        retry_delay_seconds: float = 0,
    ) -> uuid.UUID:
        """Persist a job that is due immediately.

        Returns:
            The new job's id.

        Raises:
            UnknownHandlerError: If no handler is registered under the name.
            PayloadSerializationError: If the payload is not JSON-serializable.
            PayloadDeserializationError: If the payload does not match the
                handler's payload type.
            ValueError: If max_attempts < 1 or retry_delay_seconds < 0.
        """
        record = self._build(handler_name, payload, None, max_attempts, priority, retry_delay_seconds)
        await self.store.save(record)
        self.metrics.increment(counters.ENQUEUED)

        logger.info(
            "Job enqueued: job_id=%s, handler_name=%s, priority=%s, max_attempts=%d",
            record.job_id,
            handler_name,
            record.priority.name,
            record.max_attempts,
        )
        return record.job_id

    async def schedule(
        self,
        handler_name: str,
        payload: Any = None,
        delay: timedelta | float = 0,
        max_attempts: int | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        retry_delay_seconds: float = 0,
    ) -> uuid.UUID:
        """Persist a job that becomes due after a delay.

        Args:
            delay: timedelta or seconds, must be >= 0.

        Returns:
            The new job's id.
        """
        scheduled_at = self._clock() + _as_delay(delay)
        record = self._build(
            handler_name, payload, scheduled_at, max_attempts, priority, retry_delay_seconds
        )
        await self.store.save(record)
        self.metrics.increment(counters.SCHEDULED)

        logger.info(
            "Job scheduled: job_id=%s, handler_name=%s, scheduled_at=%s, priority=%s",
            record.job_id,
            handler_name,
            scheduled_at.isoformat(),
            record.priority.name,
        )
        return record.job_id

    async def execute(
        self,
        record: JobRecord,
        cancel_event: asyncio.Event | None = None,
    ) -> JobOutcome:
        """Run a claimed job and record the outcome in the store.

        Handler failures never propagate; store failures other than
        ConcurrencyError do (the worker backs off on them).

        Args:
            record: A record claimed by this worker (status Processing).
            cancel_event: Cooperative cancellation signal passed to the handler.
        """
        cancel_event = cancel_event or asyncio.Event()

        try:
            invoker = self.registry.resolve(record.handler_name)
            result = await invoker(record.payload, cancel_event)
        except (UnknownHandlerError, PayloadDeserializationError) as e:
            logger.error("Job failed permanently: job_id=%s, error=%s", record.job_id, e)
            return await self._route_failure(record, str(e), retry=False)
        except HandlerExecutionError as e:
            logger.warning(
                "Job handler raised: job_id=%s, handler_name=%s, attempt=%d/%d",
                record.job_id,
                record.handler_name,
                record.attempt + 1,
                record.max_attempts,
                exc_info=e.cause,
            )
            return await self._route_failure(record, str(e), retry=True)

        if result.success:
            return await self._complete(record)
        return await self._route_failure(record, _failure_message(result), retry=result.retry)

    async def _complete(self, record: JobRecord) -> JobOutcome:
        try:
            await self.store.mark_completed(record.job_id)
        except ConcurrencyError as e:
            return self._lost(record, e)

        self.metrics.increment(counters.COMPLETED)
        logger.info(
            "Job completed: job_id=%s, handler_name=%s",
            record.job_id,
            record.handler_name,
        )
        return JobOutcome.COMPLETED

    async def _route_failure(self, record: JobRecord, error: str, retry: bool) -> JobOutcome:
        """Record the failure, then retry with backoff or dead-letter."""
        attempt = record.attempt + 1
        try:
            await self.store.mark_failed(record.job_id, error)
            self.metrics.increment(counters.FAILED)

            if retry and attempt < record.max_attempts:
                delay = self.retry_policy.next_delay(record.attempt, record.retry_delay_seconds)
                next_attempt_at = self._clock() + delay
                await self.store.mark_retry(record.job_id, next_attempt_at, attempt)
                self.metrics.increment(counters.RETRIED)
                logger.info(
                    "Job scheduled for retry: job_id=%s, handler_name=%s, "
                    "attempt=%d/%d, retry_at=%s, backoff=%ss",
                    record.job_id,
                    record.handler_name,
                    attempt,
                    record.max_attempts,
                    next_attempt_at.isoformat(),
                    delay.total_seconds(),
                )
                return JobOutcome.RETRY_SCHEDULED

            await self.store.mark_dead(record.job_id, attempt)
        except ConcurrencyError as e:
            return self._lost(record, e)

        self.metrics.increment(counters.DEAD)
        logger.warning(
            "Job dead-lettered: job_id=%s, handler_name=%s, attempts=%d, error=%s",
            record.job_id,
            record.handler_name,
            attempt,
            error,
        )
        return JobOutcome.DEAD

    def _lost(self, record: JobRecord, error: ConcurrencyError) -> JobOutcome:
        self.metrics.increment(counters.CONFLICTS)
        logger.warning(
            "Job advanced by another worker: job_id=%s, error=%s",
            record.job_id,
            error,
        )
        return JobOutcome.LOST

    def _build(
        self,
        handler_name: str,
        payload: Any,
        scheduled_at: datetime | None,
        max_attempts: int | None,
        priority: JobPriority,
        retry_delay_seconds: float,
    ) -> JobRecord:
        invoker = self.registry.resolve(handler_name)
        if retry_delay_seconds < 0:
            msg = f"retry_delay_seconds must be >= 0, got {retry_delay_seconds}"
            raise ValueError(msg)

        serialized = serialize_payload(payload)
        # Reject payloads the handler could never accept before they are stored
        invoker.deserialize(serialized)

        now = self._clock()
        return JobRecord(
            handler_name=handler_name,
            payload=serialized,
            priority=priority,
            scheduled_at=as_utc(scheduled_at),
            max_attempts=self.default_max_attempts if max_attempts is None else max_attempts,
            retry_delay_seconds=retry_delay_seconds,
            created_at=now,
            updated_at=now,
        )


def _failure_message(result: JobResult) -> str:
    return result.error or "Job failed"
