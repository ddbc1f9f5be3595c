"""Job record: the store-independent unit of deferred work.

Every job store hands out and accepts JobRecord instances; the SQL store
maps them to the `jobs` table, the in-memory store keeps them in a dict.
Records returned by a store are copies, so mutating one never changes the
stored state.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime


class JobStatus(enum.Enum):
    """Lifecycle state of a background job.

    Values:
        PENDING: Waiting to be claimed (possibly not yet due)
        PROCESSING: Claimed by exactly one worker
        COMPLETED: Handler succeeded (terminal)
        FAILED: Failure recorded, awaiting the retry/dead decision (transient)
        DEAD: Attempts exhausted or permanent failure (terminal)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.DEAD)


class JobPriority(enum.IntEnum):
    """Claim priority; higher values are claimed first."""

    LOW = 0
    NORMAL = 1
    HIGH = 2


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass
class JobRecord:
    """Persisted description of one unit of work and its lifecycle state.

    Attributes:
        handler_name: Registry key of the handler that runs this job.
        payload: JSON text, interpreted only by the resolved handler.
        job_id: Unique identifier, generated at creation.
        priority: Claim priority (higher first).
        status: Current lifecycle state.
        scheduled_at: When the job becomes due; None means immediately.
        attempt: Number of failed attempts recorded so far.
        max_attempts: Attempts allowed before the job goes Dead.
        last_error: Most recent failure message.
        retry_delay_seconds: Backoff seed hint; 0 uses the configured base.
        locked_by: Worker holding the job while Processing.
        locked_at: When the job was claimed.
        completed_at: When the job reached a terminal state.
        created_at: Creation time, never changes.
        updated_at: Refreshed on every state transition.
    """

    handler_name: str
    payload: str
    job_id: uuid.UUID = field(default_factory=uuid.uuid4)
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    scheduled_at: datetime | None = None
    attempt: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    retry_delay_seconds: float = 0
    locked_by: str | None = None
    locked_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not self.handler_name:
            msg = "handler_name is required"
            raise ValueError(msg)
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)
        if not 0 <= self.attempt <= self.max_attempts:
            msg = f"attempt must be between 0 and {self.max_attempts}, got {self.attempt}"
            raise ValueError(msg)
        self.priority = JobPriority(self.priority)

    def is_due(self, now: datetime) -> bool:
        """A record is due when it is Pending and its scheduled time has passed."""
        if self.status != JobStatus.PENDING:
            return False
        return self.scheduled_at is None or self.scheduled_at <= now

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def claim_order(self) -> tuple[int, datetime, datetime]:
        """Sort key for claiming: highest priority, then earliest due time."""
        return (-int(self.priority), self.scheduled_at or self.created_at, self.created_at)

    def copy(self) -> JobRecord:
        return replace(self)
