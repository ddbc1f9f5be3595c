"""Job table model for the PostgreSQL-backed job store.

Workers claim rows with SELECT ... FOR UPDATE SKIP LOCKED, so several
worker processes can share the table without claiming the same job twice.
"""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Enum, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from jobhost.db.models.base import (
    Base,
    OptionalTimestampTZ,
    TimestampTZ,
    UUIDPrimaryKey,
)
from jobhost.services.job_record import JobPriority, JobRecord, JobStatus, as_utc


class Job(Base):
    """Background job row.

    Mirrors JobRecord one-to-one; use from_record()/to_record() at the
    store boundary so callers never hold ORM instances.
    """

    __tablename__ = "jobs"

    job_id: Mapped[UUIDPrimaryKey]
    created_at: Mapped[TimestampTZ]
    updated_at: Mapped[TimestampTZ]

    # Registry key, e.g. 'send-email'
    handler_name: Mapped[str] = mapped_column(String(256), nullable=False)

    # Serialized JSON payload, opaque to the store
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    # JobPriority value (higher = claimed first)
    priority: Mapped[int] = mapped_column(Integer, default=int(JobPriority.NORMAL), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(
            JobStatus,
            name="job_status",
            create_constraint=True,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )

    # NULL means due immediately
    scheduled_at: Mapped[OptionalTimestampTZ]

    # Retry tracking
    attempt: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=3, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_delay_seconds: Mapped[float] = mapped_column(default=0, nullable=False)

    # Claim tracking, drives the visibility-timeout sweep
    locked_at: Mapped[OptionalTimestampTZ]
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    completed_at: Mapped[OptionalTimestampTZ]

    __table_args__ = (
        CheckConstraint("max_attempts >= 1", name="max_attempts_positive"),
        CheckConstraint(
            "attempt >= 0 AND attempt <= max_attempts",
            name="attempt_in_range",
        ),
        # Primary query for workers: due pending jobs, highest priority first
        Index("ix_jobs_claim", "status", "priority", "scheduled_at"),
        Index("ix_jobs_handler_name", "handler_name"),
        Index("ix_jobs_locked_at", "locked_at"),
    )

    @classmethod
    def from_record(cls, record: JobRecord) -> Job:
        return cls(
            job_id=record.job_id,
            handler_name=record.handler_name,
            payload=record.payload,
            priority=int(record.priority),
            status=record.status,
            scheduled_at=record.scheduled_at,
            attempt=record.attempt,
            max_attempts=record.max_attempts,
            last_error=record.last_error,
            retry_delay_seconds=record.retry_delay_seconds,
            locked_at=record.locked_at,
            locked_by=record.locked_by,
            completed_at=record.completed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_record(self) -> JobRecord:
        return JobRecord(
            job_id=self.job_id,
            handler_name=self.handler_name,
            payload=self.payload,
            priority=JobPriority(self.priority),
            status=self.status,
            scheduled_at=as_utc(self.scheduled_at),
            attempt=self.attempt,
            max_attempts=self.max_attempts,
            last_error=self.last_error,
            retry_delay_seconds=self.retry_delay_seconds,
            locked_at=as_utc(self.locked_at),
            locked_by=self.locked_by,
            completed_at=as_utc(self.completed_at),
            created_at=as_utc(self.created_at),
            updated_at=as_utc(self.updated_at),
        )
