"""Process-local job counters.

A JobMetrics instance is created at bootstrap and passed to the dispatcher
and workers. Counters are eventually consistent with job state: a crash
between a store transition and the increment can under-count.
"""

from __future__ import annotations

import threading

# Counter names incremented by the dispatcher and workers
ENQUEUED = "enqueued"
SCHEDULED = "scheduled"
CLAIMED = "claimed"
COMPLETED = "completed"
FAILED = "failed"
RETRIED = "retried"
DEAD = "dead"
CONFLICTS = "conflicts"
RECOVERED = "recovered"
STORE_ERRORS = "store_errors"


class JobMetrics:
    """Thread-safe named counters with a read-only snapshot."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}
        self._lock = threading.Lock()

    def increment(self, key: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + amount

    def get(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, int]:
        """Copy of all counters; later increments do not affect it."""
        with self._lock:
            return dict(self._counters)
