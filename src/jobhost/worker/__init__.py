"""jobhost worker service.

Background job runner:
- BackgroundWorker / WorkerPool: claim and execute jobs from the job store
- RecurringScheduler: periodic enqueueing of recurring job definitions

Usage:
    # Run as module
    python -m jobhost.worker

    # Or via the console script
    jobhost-worker
"""

from jobhost.worker.main import BackgroundWorker, WorkerConfig, WorkerPool, run
from jobhost.worker.recurring import RecurringJob, RecurringScheduler, run_recurring_loop

__all__ = [
    "BackgroundWorker",
    "RecurringJob",
    "RecurringScheduler",
    "WorkerConfig",
    "WorkerPool",
    "run",
    "run_recurring_loop",
]
