"""
End-to-end request routing through the orchestrator with a fake backend.

Covers the warm path, cold start queueing, concurrent callers sharing one
creation, the max_nodes bound and every error a caller can see.
"""

import asyncio

import pytest

from teepool.exceptions import (
    CapacityExceeded,
    PoolShutdown,
    ProvisioningFailure,
    RequestTimeout,
    UnsupportedCapability,
)
from teepool.models import PoolPolicy, WorkerSpec, WorkerStatus
from teepool.orchestrator import Orchestrator
from tests.backends.fake_backend import wait_until


class TestWarmPath:
    @pytest.mark.asyncio
    async def test_warm_worker_served_without_queueing(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=1)
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()
        (worker,) = orchestrator.nodes()

        result = await orchestrator.route()

        assert result.queued is False
        assert result.worker_id == worker.id
        assert result.endpoint == f"http://fake/{worker.id}"
        assert result.used_fallback is True
        assert len(backend.created) == 1
        assert orchestrator.registry.get(worker.id).status == WorkerStatus.HOT
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_unrestricted_worker_serves_any_capability(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(min_warm_nodes=1)
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()

        # Default spec has no capabilities, so it serves any workload
        result = await orchestrator.route("inference")
        assert result.queued is False
        assert len(backend.created) == 1
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_unservable_capability_refused_without_creation(self, backend):
        orchestrator = Orchestrator(
            backend=backend,
            worker_spec=WorkerSpec(image="img", capabilities=frozenset({"cpu"})),
            policy=PoolPolicy(min_warm_nodes=0, max_nodes=5),
        )

        # Every worker is built from the same spec, so "gpu" can never match
        with pytest.raises(UnsupportedCapability) as exc_info:
            await orchestrator.route("gpu")

        assert exc_info.value.code == "unsupported_capability"
        assert exc_info.value.supported == ["cpu"]
        assert backend.created == []
        assert orchestrator.queue.depth() == 0
        assert orchestrator.total_requests == 0
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_servable_request_after_refused_one_is_served(self, backend):
        orchestrator = Orchestrator(
            backend=backend,
            worker_spec=WorkerSpec(image="img", capabilities=frozenset({"cpu"})),
            policy=PoolPolicy(min_warm_nodes=0, max_nodes=5, cold_start_timeout_ms=2000),
        )
        backend.gate = asyncio.Event()

        with pytest.raises(UnsupportedCapability):
            await orchestrator.route("gpu")
        task = asyncio.create_task(orchestrator.route("cpu"))
        await wait_until(lambda: orchestrator.queue.depth() == 1 and backend.created)

        backend.gate.set()
        result = await asyncio.wait_for(task, timeout=1.0)

        assert result.queued is True
        assert len(backend.created) == 1
        await orchestrator.stop()


class TestColdStart:
    @pytest.mark.asyncio
    async def test_request_waits_for_new_worker(self, make_orchestrator, backend):
        orchestrator = make_orchestrator()
        backend.gate = asyncio.Event()

        task = asyncio.create_task(orchestrator.route())
        await wait_until(lambda: orchestrator.queue.depth() == 1 and backend.created)

        stats = orchestrator.stats()
        assert stats.queued_requests == 1
        assert stats.nodes_starting == 1
        assert stats.nodes_warm == 0

        backend.gate.set()
        result = await task

        assert result.queued is True
        assert result.worker_id == backend.created[0]
        assert result.waited_ms >= 0
        worker = orchestrator.registry.get(result.worker_id)
        assert worker.status == WorkerStatus.HOT
        assert worker.requests_served == 1
        assert worker.cold_start_duration_ms is not None
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_creation(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(scale_up_queue_threshold=5)
        backend.gate = asyncio.Event()

        tasks = [asyncio.create_task(orchestrator.route()) for _ in range(3)]
        await wait_until(lambda: orchestrator.queue.depth() == 3)
        assert len(orchestrator.nodes()) == 1

        backend.gate.set()
        results = await asyncio.gather(*tasks)

        assert len({r.worker_id for r in results}) == 1
        assert all(r.queued for r in results)
        assert len(backend.created) == 1
        assert orchestrator.registry.get(results[0].worker_id).requests_served == 3
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_backlog_threshold_forces_extra_creation(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(scale_up_queue_threshold=2)
        backend.gate = asyncio.Event()

        tasks = [asyncio.create_task(orchestrator.route()) for _ in range(4)]
        await wait_until(lambda: orchestrator.queue.depth() == 4)

        # One creation for demand, one more when the queue reached 2
        assert len(orchestrator.nodes()) == 2

        backend.gate.set()
        await asyncio.gather(*tasks)
        assert len(backend.created) == 2
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_pool_never_exceeds_max_nodes(self, make_orchestrator, backend):
        orchestrator = make_orchestrator(max_nodes=2, scale_up_queue_threshold=1)
        backend.gate = asyncio.Event()

        tasks = [asyncio.create_task(orchestrator.route()) for _ in range(6)]
        await wait_until(lambda: orchestrator.queue.depth() == 6)
        assert len(orchestrator.registry) == 2

        report = await orchestrator.tick()
        assert report.launched == []
        assert len(orchestrator.registry) == 2

        backend.gate.set()
        results = await asyncio.gather(*tasks)
        assert len(results) == 6
        assert len(backend.created) == 2
        assert len(orchestrator.registry) <= 2
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_queue(self, make_orchestrator, backend):
        orchestrator = make_orchestrator()
        backend.gate = asyncio.Event()

        task = asyncio.create_task(orchestrator.route())
        await wait_until(lambda: orchestrator.queue.depth() == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert orchestrator.queue.depth() == 0

        # The creation carries on and the worker joins the warm pool
        backend.gate.set()
        await orchestrator.autoscaler.settle()
        assert [w.status for w in orchestrator.nodes()] == [WorkerStatus.WARM]
        await orchestrator.stop()


class TestFailures:
    @pytest.mark.asyncio
    async def test_provisioning_failure_reaches_waiting_caller(
        self, make_orchestrator, backend
    ):
        orchestrator = make_orchestrator()
        backend.fail = ProvisioningFailure("no capacity in region")

        with pytest.raises(ProvisioningFailure, match="no capacity"):
            await orchestrator.route()
        assert orchestrator.nodes() == []

    @pytest.mark.asyncio
    async def test_unexpected_backend_error_wrapped(self, make_orchestrator, backend):
        orchestrator = make_orchestrator()
        backend.fail = RuntimeError("socket closed")

        with pytest.raises(ProvisioningFailure) as exc_info:
            await orchestrator.route()
        assert "RuntimeError" in exc_info.value.message
        assert exc_info.value.worker_id == backend.created[0]

    @pytest.mark.asyncio
    async def test_all_dependents_rejected_on_failure(self, make_orchestrator, backend):
        orchestrator = make_orchestrator()
        backend.gate = asyncio.Event()
        backend.fail = ProvisioningFailure("attestation failed")

        tasks = [asyncio.create_task(orchestrator.route()) for _ in range(3)]
        await wait_until(lambda: orchestrator.queue.depth() == 3)
        backend.gate.set()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, ProvisioningFailure) for r in results)
        assert orchestrator.queue.depth() == 0

    @pytest.mark.asyncio
    async def test_deadline_elapses_before_worker_is_ready(
        self, make_orchestrator, backend
    ):
        orchestrator = make_orchestrator(cold_start_timeout_ms=50)
        backend.gate = asyncio.Event()

        with pytest.raises(RequestTimeout) as exc_info:
            await orchestrator.route()
        assert exc_info.value.retry_after == pytest.approx(0.05)

        # Timing out the request does not cancel the creation
        backend.gate.set()
        await orchestrator.autoscaler.settle()
        assert [w.status for w in orchestrator.nodes()] == [WorkerStatus.WARM]

        result = await orchestrator.route()
        assert result.queued is False
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_capacity_exceeded_when_full_and_queue_full(
        self, make_orchestrator, backend
    ):
        orchestrator = make_orchestrator(max_nodes=1, max_queue_depth=1)
        backend.gate = asyncio.Event()

        waiting = asyncio.create_task(orchestrator.route())
        await wait_until(lambda: orchestrator.queue.depth() == 1)

        with pytest.raises(CapacityExceeded) as exc_info:
            await orchestrator.route()
        assert exc_info.value.max_nodes == 1
        assert exc_info.value.retry_after is not None

        backend.gate.set()
        assert (await waiting).queued is True
        await orchestrator.stop()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_rejects_queued_and_retires_late_worker(
        self, make_orchestrator, backend
    ):
        orchestrator = make_orchestrator()
        backend.gate = asyncio.Event()

        task = asyncio.create_task(orchestrator.route())
        await wait_until(lambda: orchestrator.queue.depth() == 1 and backend.created)

        stopping = asyncio.create_task(orchestrator.stop())
        with pytest.raises(PoolShutdown):
            await task

        # The in-flight creation finishes during shutdown and is torn down
        backend.gate.set()
        await stopping
        assert orchestrator.nodes() == []
        assert backend.destroyed == backend.created
        assert backend.closed

        with pytest.raises(PoolShutdown):
            await orchestrator.route()


class TestStats:
    @pytest.mark.asyncio
    async def test_stats_track_requests_and_cold_starts(self, make_orchestrator):
        orchestrator = make_orchestrator(min_warm_nodes=1)
        await orchestrator.tick()
        await orchestrator.autoscaler.settle()

        for _ in range(3):
            await orchestrator.route()
        orchestrator.report_error(orchestrator.nodes()[0].id)

        stats = orchestrator.stats()
        assert stats.total_requests == 3
        assert stats.nodes_warm == 1
        assert stats.nodes_starting == 0
        assert stats.queued_requests == 0
        assert stats.by_status["hot"] == 1
        assert stats.average_cold_start_ms >= 0
        await orchestrator.stop()
