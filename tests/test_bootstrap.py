"""Tests for component wiring from settings."""

import sys
import types
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from jobhost.bootstrap import build_job_host, build_store, load_handler_modules
from jobhost.core.config import Settings
from jobhost.services.errors import HandlerRegistrationError
from jobhost.services.handler_registry import HandlerRegistry
from jobhost.services.job_store import InMemoryJobStore
from jobhost.worker.recurring import RecurringJob


async def noop(payload, cancel_event):
    return None


@pytest.fixture
def handler_module(monkeypatch):
    """Install an importable handler module named 'example_jobs'."""
    module = types.ModuleType("example_jobs")

    def register_handlers(registry):
        registry.register("send-email", noop)
        registry.register("purge", noop)

    module.register_handlers = register_handlers
    module.RECURRING_JOBS = [RecurringJob("purge", timedelta(hours=1))]
    monkeypatch.setitem(sys.modules, "example_jobs", module)
    return module


class TestLoadHandlerModules:
    """Tests for load_handler_modules."""

    def test_registers_handlers_and_collects_recurring(self, handler_module):
        registry = HandlerRegistry()

        recurring = load_handler_modules(registry, ["example_jobs"])

        assert registry.names() == ["purge", "send-email"]
        assert [job.handler_name for job in recurring] == ["purge"]

    def test_module_without_register_function_rejected(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "empty_jobs", types.ModuleType("empty_jobs"))

        with pytest.raises(HandlerRegistrationError, match="register_handlers"):
            load_handler_modules(HandlerRegistry(), ["empty_jobs"])

    def test_missing_module_raises_import_error(self):
        with pytest.raises(ImportError):
            load_handler_modules(HandlerRegistry(), ["jobhost_no_such_module"])


class TestBuildStore:
    """Tests for build_store."""

    def test_memory_store(self):
        assert isinstance(build_store(Settings()), InMemoryJobStore)

    def test_sql_store_uses_session_factory(self, monkeypatch):
        monkeypatch.setenv("JOBHOST_STORE", "sql")
        factory = MagicMock()

        with patch("jobhost.db.get_session_factory", return_value=factory):
            store = build_store(Settings())

        assert store.session_factory is factory


class TestBuildJobHost:
    """Tests for build_job_host."""

    def test_wires_components_and_freezes_registry(self, monkeypatch, handler_module):
        monkeypatch.setenv("JOBHOST_WORKER__HANDLER_MODULES", "example_jobs")
        monkeypatch.setenv("JOBHOST_WORKER__COUNT", "3")
        monkeypatch.setenv("JOBHOST_RETRY__DEFAULT_MAX_ATTEMPTS", "5")

        host = build_job_host(Settings())

        assert host.registry.frozen is True
        assert host.registry.is_registered("send-email")
        assert host.dispatcher.default_max_attempts == 5
        assert host.dispatcher.store is host.store
        assert [job.handler_name for job in host.recurring_jobs] == ["purge"]

        workers = host.build_workers()
        assert len(workers) == 3
        assert len({worker.config.worker_id for worker in workers}) == 3

        pool = host.build_pool()
        assert pool.recurring is not None
        assert len(pool.workers) == 3

    def test_prefilled_registry_kept(self):
        registry = HandlerRegistry()
        registry.register("send-email", noop)

        host = build_job_host(Settings(), registry=registry)

        assert host.registry is registry
        assert host.registry.frozen is True
        assert host.build_pool().recurring is None

    def test_recurring_job_for_unknown_handler_rejected(self, monkeypatch):
        module = types.ModuleType("broken_jobs")
        module.register_handlers = lambda registry: None
        module.RECURRING_JOBS = [RecurringJob("missing", timedelta(hours=1))]
        monkeypatch.setitem(sys.modules, "broken_jobs", module)
        monkeypatch.setenv("JOBHOST_WORKER__HANDLER_MODULES", "broken_jobs")

        with pytest.raises(HandlerRegistrationError, match="missing"):
            build_job_host(Settings())

    @pytest.mark.asyncio
    async def test_scheduler_enqueues_into_store(self, monkeypatch, handler_module):
        monkeypatch.setenv("JOBHOST_WORKER__HANDLER_MODULES", "example_jobs")
        host = build_job_host(Settings())

        job_id = await host.scheduler.enqueue("send-email", {"to": "a@example.com"})

        assert (await host.store.get(job_id)).handler_name == "send-email"
