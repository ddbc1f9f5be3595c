"""Pytest configuration and shared fixtures.

Every test runs against the in-memory job store with a FakeClock, so time
only moves when a test advances it. The SQL store is covered with mocked
AsyncSession objects in test_sql_job_store.py.
"""

import os
from collections.abc import Generator

import pytest

from jobhost.core.settings import clear_settings_cache
from jobhost.services.dispatcher import JobDispatcher, RetryPolicy
from jobhost.services.handler_registry import HandlerRegistry
from jobhost.services.job_store import InMemoryJobStore
from jobhost.services.metrics import JobMetrics
from tests.factories import FakeClock


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch) -> Generator[None, None, None]:
    """Strip JOBHOST_* variables and reset the settings cache around each test."""
    for key in list(os.environ):
        if key.startswith("JOBHOST_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryJobStore:
    return InMemoryJobStore(clock=clock)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def metrics() -> JobMetrics:
    return JobMetrics()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=300.0)


@pytest.fixture
def dispatcher(store, registry, metrics, retry_policy, clock) -> JobDispatcher:
    return JobDispatcher(
        store,
        registry,
        metrics,
        retry_policy=retry_policy,
        default_max_attempts=3,
        clock=clock,
    )
