"""Job store contract and the in-memory implementation.

Every backend must satisfy the same contract:
- claim_next() selects one due Pending job and moves it to Processing in a
  single atomic step, so concurrent callers never receive the same job.
- Status mutations are conditional on the current status. A mutation that
  finds the job in an unexpected state raises ConcurrencyError; an unknown
  id raises JobNotFoundError.
- Returned records are copies of the stored state.

Claim order: highest priority first, then earliest scheduled_at (created_at
for immediate jobs), then earliest created_at.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from jobhost.services.errors import ConcurrencyError, JobNotFoundError
from jobhost.services.job_record import JobRecord, JobStatus, utc_now

if TYPE_CHECKING:
    import uuid

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Recorded on jobs reclaimed by the visibility-timeout sweep
STALE_JOB_ERROR = "Visibility timeout exceeded: worker did not finish the job"

# Statuses from which the dispatcher may route a failed job
ROUTABLE_STATUSES = frozenset({JobStatus.PROCESSING, JobStatus.FAILED})


class JobStore(ABC):
    """Durable storage for job records."""

    @abstractmethod
    async def save(self, record: JobRecord) -> None:
        """Insert or replace a record; idempotent on job_id."""

    @abstractmethod
    async def get(self, job_id: uuid.UUID) -> JobRecord:
        """Return a record by id.

        Raises:
            JobNotFoundError: If the job does not exist.
        """

    @abstractmethod
    async def claim_next(self, worker_id: str | None = None) -> JobRecord | None:
        """Atomically claim the next due Pending job.

        Args:
            worker_id: Identifier recorded as the job's lock holder.

        Returns:
            The claimed record (status Processing), or None if nothing is due.
        """

    @abstractmethod
    async def mark_completed(self, job_id: uuid.UUID) -> JobRecord:
        """Processing -> Completed."""

    @abstractmethod
    async def mark_failed(self, job_id: uuid.UUID, error: str) -> JobRecord:
        """Processing -> Failed, recording the error."""

    @abstractmethod
    async def mark_retry(
        self,
        job_id: uuid.UUID,
        next_attempt_at: datetime | None,
        attempt: int,
    ) -> JobRecord:
        """Failed/Processing -> Pending with a new attempt count and due time."""

    @abstractmethod
    async def mark_dead(
        self,
        job_id: uuid.UUID,
        attempt: int,
        error: str | None = None,
    ) -> JobRecord:
        """Failed/Processing -> Dead."""

    @abstractmethod
    async def recover_stale(self, timeout_seconds: float) -> int:
        """Reset jobs abandoned by crashed workers.

        Jobs in Processing whose claim is older than the timeout (or stuck in
        Failed for that long) get attempt + 1 and go back to Pending, or to
        Dead when no attempts remain.

        Returns:
            Number of jobs recovered.
        """

    @abstractmethod
    async def list_jobs(
        self,
        status: JobStatus | None = None,
        handler_name: str | None = None,
        limit: int = 100,
    ) -> list[JobRecord]:
        """List jobs ordered by creation time, oldest first."""

    @abstractmethod
    async def count(
        self,
        status: JobStatus | None = None,
        handler_name: str | None = None,
    ) -> int:
        """Count jobs matching the filters."""

    async def has_active(self, handler_name: str) -> bool:
        """Check if a Pending or Processing job exists for a handler."""
        for status in (JobStatus.PENDING, JobStatus.PROCESSING):
            if await self.count(status=status, handler_name=handler_name):
                return True
        return False


def _check_attempt(record: JobRecord, attempt: int) -> None:
    if not 0 <= attempt <= record.max_attempts:
        msg = f"attempt must be between 0 and {record.max_attempts}, got {attempt}"
        raise ValueError(msg)


class InMemoryJobStore(JobStore):
    """Job store backed by a dict, for tests and single-process deployments.

    A lock guards every read-modify-write, which makes claim_next atomic
    across asyncio tasks and threads of one process. Jobs are lost when the
    process exits.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._jobs: dict[uuid.UUID, JobRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    async def save(self, record: JobRecord) -> None:
        with self._lock:
            stored = record.copy()
            stored.updated_at = self._clock()
            self._jobs[stored.job_id] = stored
        logger.debug("Job saved: job_id=%s, status=%s", record.job_id, record.status.value)

    async def get(self, job_id: uuid.UUID) -> JobRecord:
        with self._lock:
            return self._require(job_id).copy()

    async def claim_next(self, worker_id: str | None = None) -> JobRecord | None:
        with self._lock:
            now = self._clock()
            due = [job for job in self._jobs.values() if job.is_due(now)]
            if not due:
                return None

            job = min(due, key=JobRecord.claim_order)
            job.status = JobStatus.PROCESSING
            job.locked_at = now
            job.locked_by = worker_id
            job.updated_at = now
            claimed = job.copy()

        logger.info(
            "Job claimed: job_id=%s, worker_id=%s, handler_name=%s, attempt=%d/%d",
            claimed.job_id,
            worker_id,
            claimed.handler_name,
            claimed.attempt,
            claimed.max_attempts,
        )
        return claimed

    async def mark_completed(self, job_id: uuid.UUID) -> JobRecord:
        def complete(job: JobRecord, now: datetime) -> None:
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.locked_at = None
            job.locked_by = None

        return self._transition(job_id, {JobStatus.PROCESSING}, complete)

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> JobRecord:
        def fail(job: JobRecord, _now: datetime) -> None:
            job.status = JobStatus.FAILED
            job.last_error = error

        return self._transition(job_id, {JobStatus.PROCESSING}, fail)

    async def mark_retry(
        self,
        job_id: uuid.UUID,
        next_attempt_at: datetime | None,
        attempt: int,
    ) -> JobRecord:
        def retry(job: JobRecord, _now: datetime) -> None:
            _check_attempt(job, attempt)
            job.status = JobStatus.PENDING
            job.attempt = attempt
            job.scheduled_at = next_attempt_at
            job.locked_at = None
            job.locked_by = None

        return self._transition(job_id, ROUTABLE_STATUSES, retry)

    async def mark_dead(
        self,
        job_id: uuid.UUID,
        attempt: int,
        error: str | None = None,
    ) -> JobRecord:
        def kill(job: JobRecord, now: datetime) -> None:
            _check_attempt(job, attempt)
            job.status = JobStatus.DEAD
            job.attempt = attempt
            if error is not None:
                job.last_error = error
            job.completed_at = now
            job.locked_at = None
            job.locked_by = None

        return self._transition(job_id, ROUTABLE_STATUSES, kill)

    async def recover_stale(self, timeout_seconds: float) -> int:
        recovered: list[uuid.UUID] = []
        with self._lock:
            now = self._clock()
            threshold = now - timedelta(seconds=timeout_seconds)
            for job in self._jobs.values():
                if not _is_stale(job, threshold):
                    continue
                job.attempt += 1
                job.last_error = STALE_JOB_ERROR
                job.locked_at = None
                job.locked_by = None
                job.updated_at = now
                if job.attempt >= job.max_attempts:
                    job.status = JobStatus.DEAD
                    job.completed_at = now
                else:
                    job.status = JobStatus.PENDING
                    job.scheduled_at = now
                recovered.append(job.job_id)

        if recovered:
            logger.warning("Reset %d stale jobs: %s", len(recovered), recovered)
        return len(recovered)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        handler_name: str | None = None,
        limit: int = 100,
    ) -> list[JobRecord]:
        with self._lock:
            matching = _filter(self._jobs.values(), status, handler_name)
            matching.sort(key=lambda job: job.created_at)
            return [job.copy() for job in matching[:limit]]

    async def count(
        self,
        status: JobStatus | None = None,
        handler_name: str | None = None,
    ) -> int:
        with self._lock:
            return len(_filter(self._jobs.values(), status, handler_name))

    def _require(self, job_id: uuid.UUID) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _transition(
        self,
        job_id: uuid.UUID,
        expected: Iterable[JobStatus],
        mutate: Callable[[JobRecord, datetime], None],
    ) -> JobRecord:
        """Apply a mutation only if the job is in one of the expected statuses."""
        expected = frozenset(expected)
        with self._lock:
            job = self._require(job_id)
            if job.status not in expected:
                raise ConcurrencyError(
                    job_id,
                    f"Job {job_id} is {job.status.value}, expected "
                    f"{'/'.join(sorted(s.value for s in expected))}",
                )
            now = self._clock()
            mutate(job, now)
            job.updated_at = now
            return job.copy()


def _is_stale(job: JobRecord, threshold: datetime) -> bool:
    if job.status == JobStatus.PROCESSING:
        return (job.locked_at or job.updated_at) < threshold
    if job.status == JobStatus.FAILED:
        return job.updated_at < threshold
    return False


def _filter(
    jobs: Iterable[JobRecord],
    status: JobStatus | None,
    handler_name: str | None,
) -> list[JobRecord]:
    return [
        job
        for job in jobs
        if (status is None or job.status == status)
        and (handler_name is None or job.handler_name == handler_name)
    ]
