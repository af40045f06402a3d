"""
Autoscaler control loop: minimum warm maintenance, demotion, scale-down,
health checks, error eviction and teardown.
"""

import asyncio

import pytest

from teepool.models import WorkerStatus
from tests.backends.fake_backend import FakeClock, wait_until


def _statuses(orchestrator):
    return [w.status for w in orchestrator.nodes()]


async def _warm_workers(orchestrator, count):
    for _ in range(count):
        assert orchestrator.autoscaler.launch() is not None
    await orchestrator.autoscaler.settle()
    return orchestrator.nodes()


class TestMinimumWarm:
    @pytest.mark.asyncio
    async def test_tick_launches_one_worker_at_a_time(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=3)
        backend.gate = asyncio.Event()

        first = await orchestrator.tick()
        assert len(first.launched) == 1

        # Creation still outstanding: no further launches
        second = await orchestrator.tick()
        assert second.launched == []
        assert _statuses(orchestrator) == [WorkerStatus.STARTING]

        backend.gate.set()
        await orchestrator.autoscaler.settle()
        for _ in range(2):
            await orchestrator.tick()
            await orchestrator.autoscaler.settle()

        assert _statuses(orchestrator) == [WorkerStatus.WARM] * 3
        assert len(backend.created) == 3

        assert (await orchestrator.tick()).launched == []
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_min_warm_bounded_by_max_nodes(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=2, max_nodes=2)
        for _ in range(5):
            await orchestrator.tick()
            await orchestrator.autoscaler.settle()
        assert len(orchestrator.nodes()) == 2
        assert len(backend.created) == 2
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_min_warm_above_max_nodes_fills_to_max(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=3, max_nodes=1)
        for _ in range(4):
            await orchestrator.tick()
            await orchestrator.autoscaler.settle()
        assert _statuses(orchestrator) == [WorkerStatus.WARM]
        assert len(backend.created) == 1
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_create_gets_cold_start_timeout(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=1, cold_start_timeout_ms=45_000)
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()
        assert backend.timeouts == [45.0]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_failed_creation_is_removed_and_retried_next_tick(
        self, make_orchestrator, backend
    ):
        orchestrator = make_orchestrator(min_warm_nodes=1)
        backend.fail = RuntimeError("image pull failed")

        await orchestrator.tick()
        await orchestrator.autoscaler.settle()
        assert orchestrator.nodes() == []

        backend.fail = None
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()
        assert _statuses(orchestrator) == [WorkerStatus.WARM]
        assert len(backend.created) == 2
        await orchestrator.stop()


class TestScaleDown:
    @pytest.mark.asyncio
    async def test_idle_workers_drained_down_to_minimum(self, make_orchestrator, backend):
        clock = FakeClock()
        orchestrator = make_orchestrator(
            clock=clock,
            min_warm_nodes=1,
            scale_down_idle_threshold_ms=1000,
            idle_timeout_ms=3000,
        )
        workers = await _warm_workers(orchestrator, 3)

        clock.advance(2)
        report = await orchestrator.tick()
        assert len(report.drained) == 2
        await orchestrator.autoscaler.settle()

        remaining = orchestrator.nodes()
        assert len(remaining) == 1
        assert remaining[0].status == WorkerStatus.WARM
        # Oldest first
        assert sorted(backend.destroyed) == sorted(w.id for w in workers[:2])

        assert (await orchestrator.tick()).drained == []
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_recently_used_worker_is_kept(self, make_orchestrator, backend):
        clock = FakeClock()
        orchestrator = make_orchestrator(
            clock=clock,
            min_warm_nodes=0,
            scale_down_idle_threshold_ms=1000,
            idle_timeout_ms=300_000,
        )
        await _warm_workers(orchestrator, 2)

        clock.advance(2)
        busy = orchestrator.registry.claim()

        report = await orchestrator.tick()
        await orchestrator.autoscaler.settle()

        assert busy.id not in report.drained
        assert [w.id for w in orchestrator.nodes()] == [busy.id]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_hot_worker_demoted_after_idle_third(self, make_orchestrator):
        clock = FakeClock()
        orchestrator = make_orchestrator(
            clock=clock,
            min_warm_nodes=1,
            idle_timeout_ms=3000,
        )
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()
        result = await orchestrator.route()
        assert orchestrator.registry.get(result.worker_id).status == WorkerStatus.HOT

        clock.advance(0.5)
        assert (await orchestrator.tick()).demoted == []

        clock.advance(1.0)
        report = await orchestrator.tick()
        assert report.demoted == [result.worker_id]
        assert orchestrator.registry.get(result.worker_id).status == WorkerStatus.WARM
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_failed_teardown_retried_on_next_tick(self, make_orchestrator, backend):
        orchestrator = make_orchestrator()
        (worker,) = await _warm_workers(orchestrator, 1)
        backend.destroy_ok = False

        assert orchestrator.stop_worker(worker.id)
        await orchestrator.autoscaler.settle()
        assert _statuses(orchestrator) == [WorkerStatus.DRAINING]

        backend.destroy_ok = True
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()
        assert orchestrator.nodes() == []
        assert backend.destroyed == [worker.id, worker.id]
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_stop_worker_unknown_id(self, make_orchestrator):
        orchestrator = make_orchestrator()
        assert orchestrator.stop_worker("node-missing") is False


class TestErrorEviction:
    @pytest.mark.asyncio
    async def test_errors_never_evict_without_threshold(self, make_orchestrator):
        orchestrator = make_orchestrator()
        (worker,) = await _warm_workers(orchestrator, 1)
        for _ in range(10):
            assert orchestrator.report_error(worker.id)

        report = await orchestrator.tick()
        assert report.drained == []
        assert orchestrator.registry.get(worker.id).error_count == 10
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_worker_evicted_at_threshold(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(max_error_count=2)
        (worker,) = await _warm_workers(orchestrator, 1)

        orchestrator.report_error(worker.id)
        assert (await orchestrator.tick()).drained == []

        orchestrator.report_error(worker.id)
        assert (await orchestrator.tick()).drained == [worker.id]
        await orchestrator.autoscaler.settle()
        assert backend.destroyed == [worker.id]
        assert orchestrator.nodes() == []


class TestHealthChecks:
    @pytest.mark.asyncio
    async def test_running_workers_probed_each_tick(self, make_orchestrator, backend):
        orchestrator = make_orchestrator()
        workers = await _warm_workers(orchestrator, 2)
        backend.gate = asyncio.Event()
        assert orchestrator.autoscaler.launch() is not None

        report = await orchestrator.tick()

        # The worker still starting is not probed
        assert sorted(backend.health_checks) == sorted(w.id for w in workers)
        assert report.unhealthy == []
        backend.gate.set()
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_failed_health_check_counts_error_without_eviction(
        self, make_orchestrator, backend
    ):
        orchestrator = make_orchestrator()
        (worker,) = await _warm_workers(orchestrator, 1)
        backend.unhealthy.add(worker.id)

        for _ in range(3):
            report = await orchestrator.tick()
            assert report.unhealthy == [worker.id]
            assert report.drained == []

        current = orchestrator.registry.get(worker.id)
        assert current.error_count == 3
        assert current.status == WorkerStatus.WARM
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_dead_worker_evicted_and_replaced(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=1, max_error_count=2)
        (worker,) = await _warm_workers(orchestrator, 1)
        backend.unhealthy.add(worker.id)

        assert (await orchestrator.tick()).drained == []
        report = await orchestrator.tick()
        assert report.drained == [worker.id]
        assert len(report.launched) == 1
        await orchestrator.autoscaler.settle()

        assert backend.destroyed == [worker.id]
        (replacement,) = orchestrator.nodes()
        assert replacement.id != worker.id
        assert replacement.status == WorkerStatus.WARM
        await orchestrator.stop()


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_fills_pool_and_stop_tears_down(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=1, tick_interval_seconds=0.01)
        await orchestrator.start()
        assert orchestrator.autoscaler.running

        await wait_until(lambda: orchestrator.stats().nodes_warm == 1)
        await orchestrator.stop()

        assert not orchestrator.autoscaler.running
        assert orchestrator.nodes() == []
        assert len(backend.destroyed) == 1
        assert backend.closed

    @pytest.mark.asyncio
    async def test_async_context_manager(self, make_orchestrator, backend):
        async with make_orchestrator(min_warm_nodes=1) as orchestrator:
            result = await orchestrator.route()
            assert result.endpoint.startswith("http://fake/")
        assert backend.closed
