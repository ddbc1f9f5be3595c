"""Exception types raised by job stores, the handler registry and the dispatcher.

Recoverability at a glance:
- JobNotFoundError: caller error, surfaced, never retried.
- ConcurrencyError: another worker advanced the job; the worker keeps polling.
- UnknownHandlerError / PayloadDeserializationError: permanent, job goes Dead.
- HandlerExecutionError: retried with backoff until attempts run out.
- StoreUnavailableError: transient, the worker backs off and polls again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import uuid


class JobError(Exception):
    """Base exception for background job operations."""

    pass


class JobStoreError(JobError):
    """Raised when a job store operation fails in the backend."""

    pass


class StoreUnavailableError(JobStoreError):
    """Raised when the job store backend cannot be reached."""

    pass


class JobNotFoundError(JobError):
    """Raised when a job identifier is unknown to the store."""

    def __init__(self, job_id: uuid.UUID) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ConcurrencyError(JobError):
    """Raised when a conditional status update finds the job in another state.

    Typically another worker (or the stale-job sweep) already advanced the
    job, or the job is already terminal.
    """

    def __init__(self, job_id: uuid.UUID, message: str) -> None:
        self.job_id = job_id
        super().__init__(message)


class HandlerRegistrationError(JobError):
    """Raised for invalid or late handler registrations."""

    pass


class UnknownHandlerError(JobError):
    """Raised when no handler is registered under a name."""

    def __init__(self, handler_name: str) -> None:
        self.handler_name = handler_name
        super().__init__(f"No handler registered for handler_name={handler_name}")


class PayloadSerializationError(JobError):
    """Raised at enqueue time when a payload cannot be serialized to JSON."""

    pass


class PayloadDeserializationError(JobError):
    """Raised when a stored payload does not match the registered payload type."""

    def __init__(self, handler_name: str, detail: str) -> None:
        self.handler_name = handler_name
        super().__init__(f"Invalid payload for handler_name={handler_name}: {detail}")


class HandlerExecutionError(JobError):
    """Raised when a handler raises while processing a job."""

    def __init__(self, handler_name: str, cause: BaseException) -> None:
        self.handler_name = handler_name
        self.cause = cause
        super().__init__(f"{type(cause).__name__}: {cause}")
