"""jobhost service layer.

Background job processing building blocks:
- JobRecord: persisted unit of work and its lifecycle state
- JobStore / InMemoryJobStore: storage contract and in-process backend
  (SqlAlchemyJobStore lives in jobhost.services.sql_job_store)
- HandlerRegistry: handler name -> typed invoker
- JobDispatcher: job creation, execution and retry routing
- JobScheduler: producer-facing enqueue/schedule facade
- JobMetrics: process-local counters
"""

from jobhost.services.dispatcher import JobDispatcher, JobOutcome, RetryPolicy
from jobhost.services.errors import (
    ConcurrencyError,
    HandlerExecutionError,
    HandlerRegistrationError,
    JobError,
    JobNotFoundError,
    JobStoreError,
    PayloadDeserializationError,
    PayloadSerializationError,
    StoreUnavailableError,
    UnknownHandlerError,
)
from jobhost.services.handler_registry import HandlerRegistry, JobHandler, JobResult
from jobhost.services.job_record import JobPriority, JobRecord, JobStatus
from jobhost.services.job_scheduler import JobScheduler
from jobhost.services.job_store import InMemoryJobStore, JobStore
from jobhost.services.metrics import JobMetrics

__all__ = [
    "ConcurrencyError",
    "HandlerExecutionError",
    "HandlerRegistrationError",
    "HandlerRegistry",
    "InMemoryJobStore",
    "JobDispatcher",
    "JobError",
    "JobHandler",
    "JobMetrics",
    "JobNotFoundError",
    "JobOutcome",
    "JobPriority",
    "JobRecord",
    "JobResult",
    "JobScheduler",
    "JobStatus",
    "JobStore",
    "JobStoreError",
    "PayloadDeserializationError",
    "PayloadSerializationError",
    "RetryPolicy",
    "StoreUnavailableError",
    "UnknownHandlerError",
]
