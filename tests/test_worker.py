"""Tests for the background worker and worker pool.

Tests cover:
- Worker configuration
- Single iterations (run_once): claim, execute, idle
- Loop resilience to store outages and unexpected errors
- Graceful shutdown and the shared cancellation event
- Visibility-timeout sweeps
- WorkerPool start/stop
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from jobhost.core.config import WorkerSettings
from jobhost.services import metrics as counters
from jobhost.services.errors import StoreUnavailableError
from jobhost.services.job_record import JobStatus
from jobhost.worker.main import BackgroundWorker, WorkerConfig, WorkerPool


async def noop(payload, cancel_event):
    return None


def make_worker(store, dispatcher, metrics, **overrides) -> BackgroundWorker:
    config = WorkerConfig(
        worker_id=overrides.pop("worker_id", "worker-test"),
        poll_interval=overrides.pop("poll_interval", 0.01),
        error_backoff=overrides.pop("error_backoff", 0.01),
        **overrides,
    )
    return BackgroundWorker(store, dispatcher, metrics, config)


class TestWorkerConfig:
    """Tests for WorkerConfig."""

    def test_default_config(self):
        """Test default configuration values."""
        config = WorkerConfig()

        assert config.poll_interval == 1.0
        assert config.visibility_timeout_seconds == 600
        assert config.sweep_interval == 60.0
        assert config.worker_id.startswith("worker-")

    def test_worker_id_auto_generated(self):
        """Test each config gets a distinct worker id."""
        assert WorkerConfig().worker_id != WorkerConfig().worker_id

    def test_from_settings(self):
        """Test settings are mapped onto the worker config."""
        settings = WorkerSettings(
            id_prefix="mail",
            poll_interval=2.5,
            visibility_timeout_seconds=120,
            sweep_interval=30,
        )

        config = WorkerConfig.from_settings(settings, index=3)

        assert config.worker_id.startswith("mail-3-")
        assert config.poll_interval == 2.5
        assert config.visibility_timeout_seconds == 120
        assert config.sweep_interval == 30


class TestRunOnce:
    """Tests for single worker iterations."""

    @pytest.mark.asyncio
    async def test_idle_returns_false(self, store, dispatcher, metrics):
        """Test an empty store yields no work."""
        worker = make_worker(store, dispatcher, metrics)

        assert await worker.run_once() is False
        assert worker.jobs_processed == 0

    @pytest.mark.asyncio
    async def test_claims_and_executes(self, store, dispatcher, registry, metrics):
        """Test one iteration claims and completes one job."""
        registry.register("ok", noop)
        job_id = await dispatcher.enqueue("ok", {})
        worker = make_worker(store, dispatcher, metrics)

        assert await worker.run_once() is True

        assert (await store.get(job_id)).status == JobStatus.COMPLETED
        assert metrics.get(counters.CLAIMED) == 1
        assert worker.jobs_processed == 1

    @pytest.mark.asyncio
    async def test_records_worker_id_on_claim(self, store, dispatcher, registry, metrics):
        """Test the claim is recorded under this worker's id."""
        seen = []

        async def inspect_lock(payload, cancel_event):
            seen.extend(await store.list_jobs(status=JobStatus.PROCESSING))

        registry.register("inspect", inspect_lock)
        await dispatcher.enqueue("inspect", {})
        worker = make_worker(store, dispatcher, metrics, worker_id="worker-7")

        await worker.run_once()

        assert [record.locked_by for record in seen] == ["worker-7"]

    @pytest.mark.asyncio
    async def test_sweeps_on_first_iteration_then_throttles(self, dispatcher, metrics):
        """Test recover_stale runs once per sweep interval."""
        store = AsyncMock()
        store.claim_next.return_value = None
        store.recover_stale.return_value = 2
        worker = make_worker(
            store, dispatcher, metrics, sweep_interval=3600, visibility_timeout_seconds=120
        )

        await worker.run_once()
        await worker.run_once()

        store.recover_stale.assert_awaited_once_with(120)
        assert metrics.get(counters.RECOVERED) == 2

    @pytest.mark.asyncio
    async def test_recovers_abandoned_job(self, store, dispatcher, registry, metrics, clock):
        """Test a job abandoned by a crashed worker is picked up again."""
        registry.register("ok", noop)
        job_id = await dispatcher.enqueue("ok", {})
        await store.claim_next("crashed-worker")
        clock.advance(601)
        worker = make_worker(store, dispatcher, metrics, visibility_timeout_seconds=600)

        assert await worker.run_once() is True

        record = await store.get(job_id)
        assert record.status == JobStatus.COMPLETED
        assert record.attempt == 1


class TestWorkerLoop:
    """Tests for the processing loop and shutdown."""

    @pytest.mark.asyncio
    async def test_stop_sets_shutdown_event(self, store, dispatcher, metrics):
        """Test stop() requests shutdown."""
        worker = make_worker(store, dispatcher, metrics)

        await worker.stop()

        assert worker._shutdown_event.is_set()

    @pytest.mark.asyncio
    async def test_drains_queue_then_stops(self, store, dispatcher, registry, metrics):
        """Test the loop processes queued jobs and exits on stop."""
        registry.register("ok", noop)
        job_ids = [await dispatcher.enqueue("ok", {"n": n}) for n in range(3)]
        worker = make_worker(store, dispatcher, metrics)

        task = asyncio.create_task(worker.start())
        for _ in range(100):
            if await store.count(status=JobStatus.COMPLETED) == 3:
                break
            await asyncio.sleep(0.01)
        await worker.stop()
        await asyncio.wait_for(task, timeout=1)

        for job_id in job_ids:
            assert (await store.get(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_exits_immediately_when_already_stopped(self, store, dispatcher, metrics):
        """Test start() returns at once if the shutdown event is already set."""
        event = asyncio.Event()
        event.set()
        worker = make_worker(store, dispatcher, metrics)

        await asyncio.wait_for(worker.start(event), timeout=1)

        assert worker.jobs_processed == 0

    @pytest.mark.asyncio
    async def test_in_flight_job_finishes_on_shutdown(self, store, dispatcher, registry, metrics):
        """Test shutdown sets the cancel event but lets the handler finish."""
        started = asyncio.Event()
        observed = []

        async def long_running(payload, cancel_event):
            started.set()
            await cancel_event.wait()
            observed.append(cancel_event.is_set())

        registry.register("long", long_running)
        job_id = await dispatcher.enqueue("long", {})
        worker = make_worker(store, dispatcher, metrics)

        task = asyncio.create_task(worker.start())
        await asyncio.wait_for(started.wait(), timeout=1)
        await worker.stop()
        await asyncio.wait_for(task, timeout=1)

        assert observed == [True]
        assert (await store.get(job_id)).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_store_outage_does_not_stop_loop(self, dispatcher, metrics):
        """Test StoreUnavailableError is counted and the loop keeps polling."""
        store = AsyncMock()
        store.recover_stale.return_value = 0
        calls = 0

        async def flaky_claim(worker_id):
            nonlocal calls
            calls += 1
            if calls < 3:
                raise StoreUnavailableError("db down")
            await worker.stop()
            return None

        store.claim_next.side_effect = flaky_claim
        worker = make_worker(store, dispatcher, metrics)

        await asyncio.wait_for(worker.start(), timeout=1)

        assert calls == 3
        assert metrics.get(counters.STORE_ERRORS) == 2

    @pytest.mark.asyncio
    async def test_unexpected_error_logged_and_loop_continues(self, dispatcher, metrics):
        """Test unexpected exceptions are logged and do not kill the worker."""
        store = AsyncMock()
        store.recover_stale.return_value = 0
        calls = 0

        async def broken_claim(worker_id):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("unexpected")
            await worker.stop()
            return None

        store.claim_next.side_effect = broken_claim
        worker = make_worker(store, dispatcher, metrics)

        with patch("jobhost.worker.main.logger") as mock_logger:
            await asyncio.wait_for(worker.start(), timeout=1)

        assert calls == 2
        mock_logger.exception.assert_called_once()


class TestWorkerUptime:
    """Tests for uptime formatting."""

    def test_uptime_not_started(self, store, dispatcher, metrics):
        assert make_worker(store, dispatcher, metrics)._get_uptime() == "0s"

    def test_uptime_minutes(self, store, dispatcher, metrics):
        worker = make_worker(store, dispatcher, metrics)
        worker._started_at = datetime.now(UTC) - timedelta(minutes=2, seconds=5)

        assert worker._get_uptime().startswith("2m")

    def test_uptime_hours(self, store, dispatcher, metrics):
        worker = make_worker(store, dispatcher, metrics)
        worker._started_at = datetime.now(UTC) - timedelta(hours=1, minutes=3)

        assert worker._get_uptime().startswith("1h 3m")


class TestWorkerPool:
    """Tests for WorkerPool."""

    @pytest.mark.asyncio
    async def test_pool_processes_jobs_once(self, store, dispatcher, registry, metrics):
        """Test several workers share the queue without duplicate execution."""
        executed = []

        async def record_run(payload, cancel_event):
            executed.append(payload["n"])
            await asyncio.sleep(0)

        registry.register("count", record_run)
        for n in range(20):
            await dispatcher.enqueue("count", {"n": n})
        workers = [
            make_worker(store, dispatcher, metrics, worker_id=f"worker-{i}") for i in range(4)
        ]
        pool = WorkerPool(workers, shutdown_timeout=1)

        await pool.start()
        for _ in range(200):
            if await store.count(status=JobStatus.COMPLETED) == 20:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert sorted(executed) == list(range(20))
        assert metrics.get(counters.COMPLETED) == 20

    @pytest.mark.asyncio
    async def test_stop_cancels_workers_after_timeout(self, store, dispatcher, registry, metrics):
        """Test workers stuck past shutdown_timeout are cancelled."""
        started = asyncio.Event()

        async def stubborn(payload, cancel_event):
            started.set()
            await asyncio.sleep(3600)

        registry.register("stubborn", stubborn)
        await dispatcher.enqueue("stubborn", {})
        pool = WorkerPool([make_worker(store, dispatcher, metrics)], shutdown_timeout=0.05)

        await pool.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await asyncio.wait_for(pool.stop(), timeout=1)

        assert pool.shutdown_event.is_set()
        assert await store.count(status=JobStatus.PROCESSING) == 1

    @pytest.mark.asyncio
    async def test_run_until_stop_event(self, store, dispatcher, metrics):
        """Test run() returns once the external stop event is set."""
        pool = WorkerPool([make_worker(store, dispatcher, metrics)], shutdown_timeout=1)
        stop_event = asyncio.Event()

        task = asyncio.create_task(pool.run(stop_event))
        await asyncio.sleep(0.02)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1)

        assert pool.shutdown_event.is_set()
