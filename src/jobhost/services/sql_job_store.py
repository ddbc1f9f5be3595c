"""PostgreSQL-backed job store.

This store provides reliable job claiming using PostgreSQL's
SELECT ... FOR UPDATE SKIP LOCKED pattern for safe concurrent access.

Key features:
- Atomic job claiming with SKIP LOCKED (no duplicate processing)
- Conditional UPDATE ... RETURNING for every status transition, so a
  worker that lost a race gets ConcurrencyError instead of clobbering state
- Visibility-timeout sweep for jobs abandoned by crashed workers

Each operation runs in its own short transaction from the session factory.

Usage:
    from jobhost.db import get_session_factory
    from jobhost.services.sql_job_store import SqlAlchemyJobStore

    store = SqlAlchemyJobStore(get_session_factory())
    job = await store.claim_next("worker-1")
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import (
    DBAPIError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from jobhost.db.models.jobs import Job
from jobhost.services.errors import (
    ConcurrencyError,
    JobNotFoundError,
    JobStoreError,
    StoreUnavailableError,
)
from jobhost.services.job_record import JobRecord, JobStatus, utc_now
from jobhost.services.job_store import (
    ROUTABLE_STATUSES,
    STALE_JOB_ERROR,
    Clock,
    JobStore,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncIterator, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _translate_error(action: str, exc: SQLAlchemyError) -> JobStoreError:
    """Map a SQLAlchemy failure to the job store error taxonomy."""
    unavailable = isinstance(exc, OperationalError | InterfaceError | PoolTimeoutError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    )
    if unavailable:
        return StoreUnavailableError(f"Job store unavailable while trying to {action}: {exc}")
    return JobStoreError(f"Failed to {action}: {exc}")


class SqlAlchemyJobStore(JobStore):
    """Job store on the `jobs` table.

    Attributes:
        session_factory: Factory producing AsyncSession instances.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[AsyncSession]:
        """Yield a session, committing on success and rolling back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("Failed to %s: %s", action, str(e))
                raise _translate_error(action, e) from e
            except Exception:
                await session.rollback()
                raise

    async def save(self, record: JobRecord) -> None:
        record = record.copy()
        record.updated_at = self._clock()
        async with self._transaction("save job") as session:
            await session.merge(Job.from_record(record))

        logger.debug("Job saved: job_id=%s, status=%s", record.job_id, record.status.value)

    async def get(self, job_id: uuid.UUID) -> JobRecord:
        async with self._transaction("get job") as session:
            result = await session.execute(select(Job).where(Job.job_id == job_id))
            job = result.scalar_one_or_none()
            if job is None:
                raise JobNotFoundError(job_id)
            return job.to_record()

    async def claim_next(self, worker_id: str | None = None) -> JobRecord | None:
        now = self._clock()

        async with self._transaction("claim job") as session:
            # Lock a single due row, skipping rows other workers hold
            stmt = (
                select(Job)
                .where(
                    Job.status == JobStatus.PENDING,
                    or_(Job.scheduled_at.is_(None), Job.scheduled_at <= now),
                )
                .order_by(
                    Job.priority.desc(),
                    func.coalesce(Job.scheduled_at, Job.created_at),
                    Job.created_at,
                )
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()

            if job is None:
                return None

            job.status = JobStatus.PROCESSING
            job.locked_at = now
            job.locked_by = worker_id
            job.updated_at = now
            await session.flush()
            claimed = job.to_record()

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
        now = self._clock()
        return await self._transition(
            "complete job",
            job_id,
            {JobStatus.PROCESSING},
            status=JobStatus.COMPLETED,
            completed_at=now,
            locked_at=None,
            locked_by=None,
            updated_at=now,
        )

    async def mark_failed(self, job_id: uuid.UUID, error: str) -> JobRecord:
        return await self._transition(
            "fail job",
            job_id,
            {JobStatus.PROCESSING},
            status=JobStatus.FAILED,
            last_error=error,
            updated_at=self._clock(),
        )

    async def mark_retry(
        self,
        job_id: uuid.UUID,
        next_attempt_at: datetime | None,
        attempt: int,
    ) -> JobRecord:
        if attempt < 0:
            msg = f"attempt must be >= 0, got {attempt}"
            raise ValueError(msg)
        return await self._transition(
            "retry job",
            job_id,
            ROUTABLE_STATUSES,
            guard=Job.max_attempts >= attempt,
            status=JobStatus.PENDING,
            attempt=attempt,
            scheduled_at=next_attempt_at,
            locked_at=None,
            locked_by=None,
            updated_at=self._clock(),
        )

    async def mark_dead(
        self,
        job_id: uuid.UUID,
        attempt: int,
        error: str | None = None,
    ) -> JobRecord:
        if attempt < 0:
            msg = f"attempt must be >= 0, got {attempt}"
            raise ValueError(msg)
        now = self._clock()
        values: dict[str, Any] = {
            "status": JobStatus.DEAD,
            "attempt": attempt,
            "completed_at": now,
            "locked_at": None,
            "locked_by": None,
            "updated_at": now,
        }
        if error is not None:
            values["last_error"] = error
        return await self._transition(
            "dead-letter job",
            job_id,
            ROUTABLE_STATUSES,
            guard=Job.max_attempts >= attempt,
            **values,
        )

    async def recover_stale(self, timeout_seconds: float) -> int:
        now = self._clock()
        threshold = now - timedelta(seconds=timeout_seconds)
        stale = or_(
            and_(
                Job.status == JobStatus.PROCESSING,
                func.coalesce(Job.locked_at, Job.updated_at) < threshold,
            ),
            and_(Job.status == JobStatus.FAILED, Job.updated_at < threshold),
        )
        released = {
            "attempt": Job.attempt + 1,
            "last_error": STALE_JOB_ERROR,
            "locked_at": None,
            "locked_by": None,
            "updated_at": now,
        }

        async with self._transaction("recover stale jobs") as session:
            # Exhausted jobs first; the second statement no longer sees them
            dead_stmt = (
                update(Job)
                .where(stale, Job.attempt + 1 >= Job.max_attempts)
                .values(status=JobStatus.DEAD, completed_at=now, **released)
                .returning(Job.job_id)
                .execution_options(synchronize_session=False)
            )
            dead_ids = list((await session.execute(dead_stmt)).scalars().all())

            reset_stmt = (
                update(Job)
                .where(stale, Job.attempt + 1 < Job.max_attempts)
                .values(status=JobStatus.PENDING, scheduled_at=now, **released)
                .returning(Job.job_id)
                .execution_options(synchronize_session=False)
            )
            reset_ids = list((await session.execute(reset_stmt)).scalars().all())

        if dead_ids or reset_ids:
            logger.warning(
                "Reset %d stale jobs: reset=%s, dead=%s",
                len(dead_ids) + len(reset_ids),
                reset_ids,
                dead_ids,
            )
        return len(dead_ids) + len(reset_ids)

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        handler_name: str | None = None,
        limit: int = 100,
    ) -> list[JobRecord]:
        stmt = select(Job).order_by(Job.created_at).limit(limit)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        if handler_name is not None:
            stmt = stmt.where(Job.handler_name == handler_name)

        async with self._transaction("list jobs") as session:
            result = await session.execute(stmt)
            return [job.to_record() for job in result.scalars().all()]

    async def count(
        self,
        status: JobStatus | None = None,
        handler_name: str | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(Job)
        if status is not None:
            stmt = stmt.where(Job.status == status)
        if handler_name is not None:
            stmt = stmt.where(Job.handler_name == handler_name)

        async with self._transaction("count jobs") as session:
            result = await session.execute(stmt)
            return result.scalar() or 0

    async def has_active(self, handler_name: str) -> bool:
        stmt = (
            select(Job.job_id)
            .where(
                Job.handler_name == handler_name,
                Job.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]),
            )
            .limit(1)
        )
        async with self._transaction("check active jobs") as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none() is not None

    async def _transition(
        self,
        action: str,
        job_id: uuid.UUID,
        expected: Iterable[JobStatus],
        guard: Any = None,
        **values: Any,
    ) -> JobRecord:
        """Conditionally update one job, compare-and-swap style on its status."""
        expected = list(expected)
        stmt = update(Job).where(Job.job_id == job_id, Job.status.in_(expected))
        if guard is not None:
            stmt = stmt.where(guard)
        stmt = (
            stmt.values(**values)
            .returning(Job)
            .execution_options(synchronize_session=False)
        )

        async with self._transaction(action) as session:
            result = await session.execute(stmt)
            job = result.scalar_one_or_none()
            if job is None:
                await self._raise_for_missed_update(session, job_id, expected)
            record = job.to_record()

        logger.info(
            "Job transitioned: job_id=%s, handler_name=%s, status=%s, attempt=%d/%d",
            record.job_id,
            record.handler_name,
            record.status.value,
            record.attempt,
            record.max_attempts,
        )
        return record

    async def _raise_for_missed_update(
        self,
        session: AsyncSession,
        job_id: uuid.UUID,
        expected: list[JobStatus],
    ) -> None:
        result = await session.execute(
            select(Job.status, Job.max_attempts).where(Job.job_id == job_id)
        )
        row = result.one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)

        status, max_attempts = row
        if status in expected:
            # Status matched, so the attempt guard rejected the update
            msg = f"attempt exceeds max_attempts={max_attempts} for job {job_id}"
            raise ValueError(msg)
        raise ConcurrencyError(
            job_id,
            f"Job {job_id} is {status.value}, expected "
            f"{'/'.join(sorted(s.value for s in expected))}",
        )

