"""Component wiring from Settings.

Startup is two-phase: the handler registry is filled from the configured
handler modules and frozen before any worker starts, so workers only ever
read it.

A handler module exposes ``register_handlers(registry)`` and may declare a
``RECURRING_JOBS`` list of RecurringJob definitions:

    # myapp/jobs.py
    from datetime import timedelta

    from jobhost.worker.recurring import RecurringJob

    RECURRING_JOBS = [RecurringJob("purge-sessions", timedelta(hours=1))]

    def register_handlers(registry):
        registry.register("send-email", send_email, SendEmail)
        registry.register("purge-sessions", purge_sessions)

    # JOBHOST_WORKER__HANDLER_MODULES=myapp.jobs jobhost-worker
"""

from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from jobhost.core.config import StoreBackend
from jobhost.services.dispatcher import JobDispatcher, RetryPolicy
from jobhost.services.errors import HandlerRegistrationError
from jobhost.services.handler_registry import HandlerRegistry
from jobhost.services.job_record import utc_now
from jobhost.services.job_scheduler import JobScheduler
from jobhost.services.job_store import InMemoryJobStore
from jobhost.services.metrics import JobMetrics
from jobhost.worker.main import BackgroundWorker, WorkerConfig, WorkerPool
from jobhost.worker.recurring import RecurringJob, RecurringScheduler

if TYPE_CHECKING:
    from collections.abc import Iterable

    from jobhost.core.config import Settings
    from jobhost.services.job_store import Clock, JobStore

logger = logging.getLogger(__name__)


@dataclass
class JobHost:
    """Wired components for one process."""

    settings: Settings
    store: JobStore
    registry: HandlerRegistry
    metrics: JobMetrics
    dispatcher: JobDispatcher
    scheduler: JobScheduler
    recurring_jobs: list[RecurringJob] = field(default_factory=list)

    def build_workers(self) -> list[BackgroundWorker]:
        return [
            BackgroundWorker(
                self.store,
                self.dispatcher,
                self.metrics,
                WorkerConfig.from_settings(self.settings.worker, index),
            )
            for index in range(self.settings.worker.count)
        ]

    def build_pool(self) -> WorkerPool:
        recurring = None
        if self.recurring_jobs:
            recurring = RecurringScheduler(self.scheduler, self.store, self.recurring_jobs)
        return WorkerPool(
            self.build_workers(),
            recurring=recurring,
            recurring_check_interval=self.settings.worker.recurring_check_interval,
            shutdown_timeout=self.settings.worker.shutdown_timeout,
        )


def build_store(settings: Settings, clock: Clock = utc_now) -> JobStore:
    """Create the job store selected by settings.store."""
    if settings.store == StoreBackend.SQL:
        from jobhost.db import get_session_factory
        from jobhost.services.sql_job_store import SqlAlchemyJobStore

        return SqlAlchemyJobStore(get_session_factory(), clock=clock)
    return InMemoryJobStore(clock=clock)


def load_handler_modules(
    registry: HandlerRegistry,
    module_names: Iterable[str],
) -> list[RecurringJob]:
    """Import handler modules and let each register its handlers.

    Returns:
        Recurring job definitions declared by the modules.

    Raises:
        HandlerRegistrationError: If a module has no register_handlers().
        ImportError: If a module cannot be imported.
    """
    recurring: list[RecurringJob] = []
    for name in module_names:
        module = importlib.import_module(name)
        register = getattr(module, "register_handlers", None)
        if not callable(register):
            msg = f"Handler module {name} does not define register_handlers(registry)"
            raise HandlerRegistrationError(msg)

        register(registry)
        recurring.extend(getattr(module, "RECURRING_JOBS", []))
        logger.info("Loaded handler module: module=%s", name)
    return recurring


def build_job_host(
    settings: Settings | None = None,
    registry: HandlerRegistry | None = None,
    store: JobStore | None = None,
    clock: Clock = utc_now,
) -> JobHost:
    """Build and wire every component, freezing the registry.

    Args:
        settings: Settings to use; defaults to the cached environment settings.
        registry: Pre-filled registry; configured handler modules are added to it.
        store: Store to use instead of the one selected by settings.
        clock: Time source shared by the store and dispatcher.
    """
    if settings is None:
        from jobhost.core.settings import get_settings

        settings = get_settings()

    registry = registry or HandlerRegistry()
    recurring_jobs = load_handler_modules(registry, settings.worker.handler_module_list)
    registry.freeze()

    for job in recurring_jobs:
        if not registry.is_registered(job.handler_name):
            msg = f"Recurring job references unknown handler_name={job.handler_name}"
            raise HandlerRegistrationError(msg)

    store = store or build_store(settings, clock)
    metrics = JobMetrics()
    dispatcher = JobDispatcher(
        store,
        registry,
        metrics,
        retry_policy=RetryPolicy.from_settings(settings.retry),
        default_max_attempts=settings.retry.default_max_attempts,
        clock=clock,
    )

    logger.info(
        "Job host built: store=%s, handlers=%s, recurring=%d",
        type(store).__name__,
        registry.names(),
        len(recurring_jobs),
    )
    return JobHost(
        settings=settings,
        store=store,
        registry=registry,
        metrics=metrics,
        dispatcher=dispatcher,
        scheduler=JobScheduler(dispatcher),
        recurring_jobs=recurring_jobs,
    )
