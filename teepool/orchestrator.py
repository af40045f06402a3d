"""
Orchestrator: routes requests to warm workers and owns the pool components.

Request path (any number of concurrent callers):
    claim a warm/hot worker -> return its endpoint immediately
    otherwise -> enqueue, make sure a creation is in flight, wait on the
    request handle (bounded by the cold start timeout)

The request path never awaits the provisioning backend directly; the
autoscaler provisions out of line and drains the queue when a worker turns
warm.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, List, Optional

from teepool.admission import AdmissionQueue
from teepool.autoscaler import Autoscaler, TickReport
from teepool.backends.base import ProvisioningBackend
from teepool.exceptions import CapacityExceeded, PoolShutdown, UnsupportedCapability
from teepool.models import PoolPolicy, Worker, WorkerSpec
from teepool.registry import NodePoolRegistry
from teepool.stats import PoolStats, StatsCollector

if TYPE_CHECKING:
    from teepool.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class RouteResult:
    """Where a caller should send its workload."""

    endpoint: str
    worker_id: str
    # True if the request waited in the admission queue
    queued: bool = False
    waited_ms: float = 0.0
    # True when served by a backend that simulates the TEE
    used_fallback: bool = False


class Orchestrator:
    """
    On-demand autoscaling pool of TEE workers.

    All collaborators are passed in explicitly; nothing is looked up from
    module-level singletons.

    Usage:
        orchestrator = Orchestrator(
            backend=RemoteFleetBackend(endpoint=..., api_key=...),
            worker_spec=WorkerSpec(image="ghcr.io/acme/worker:latest"),
            policy=PoolPolicy(min_warm_nodes=1, max_nodes=5),
        )
        await orchestrator.start()

        result = await orchestrator.route("inference")
        print(result.endpoint)

        await orchestrator.stop()
    """

    def __init__(
        self,
        backend: ProvisioningBackend,
        worker_spec: WorkerSpec,
        policy: Optional[PoolPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._worker_spec = worker_spec
        self._policy = policy or PoolPolicy()
        self._clock = clock

        self.registry = NodePoolRegistry(clock=clock)
        self.queue = AdmissionQueue(clock=clock)
        self.autoscaler = Autoscaler(
            self.registry, self.queue, backend, self._policy, worker_spec
        )
        self._stats = StatsCollector(self.registry, self.queue)

        self._total_requests = 0
        self._counter_lock = threading.Lock()
        self._stopping = False

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Orchestrator":
        from teepool.backends import build_backend

        return cls(
            backend=build_backend(settings),
            worker_spec=settings.worker_spec(),
            policy=settings.policy(),
        )

    @property
    def policy(self) -> PoolPolicy:
        return self._policy

    @property
    def backend(self) -> ProvisioningBackend:
        return self._backend

    @property
    def total_requests(self) -> int:
        with self._counter_lock:
            return self._total_requests

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the control loop; its first tick fills the minimum warm pool."""
        self._stopping = False
        await self.autoscaler.start()
        logger.info(
            "Orchestrator started (backend=%s, min_warm=%d, max_nodes=%d)",
            self._backend.name,
            self._policy.min_warm_nodes,
            self._policy.max_nodes,
        )

    async def stop(self) -> None:
        """Reject waiting requests, drain and destroy every worker."""
        self._stopping = True
        await self.autoscaler.stop()
        rejected = self.queue.reject_all(PoolShutdown())
        if rejected:
            logger.info("Rejected %d queued request(s) on shutdown", rejected)
        await self.autoscaler.shutdown()
        await self._backend.close()
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> "Orchestrator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def tick(self) -> TickReport:
        """Run one policy evaluation now."""
        return await self.autoscaler.tick()

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    async def route(self, capability: Optional[str] = None) -> RouteResult:
        """
        Get an endpoint for a workload, waiting for a cold start if needed.

        Raises:
            PoolShutdown: The orchestrator is stopping.
            UnsupportedCapability: No worker the pool can create serves it.
            CapacityExceeded: Pool at max_nodes and the queue is full.
            RequestTimeout: No worker became available before the deadline.
            ProvisioningFailure: The creation this request waited on failed.
        """
        if self._stopping:
            raise PoolShutdown()
        if not self._worker_spec.serves(capability):
            raise UnsupportedCapability(
                capability, supported=self._worker_spec.capabilities
            )

        with self._counter_lock:
            self._total_requests += 1

        started = self._clock()
        worker = self.registry.claim(capability)
        if worker is not None:
            return self._result(worker, queued=False, started=started)

        policy = self._policy
        depth_before = self.queue.depth()
        if (
            len(self.registry) >= policy.max_nodes
            and depth_before >= policy.max_queue_depth
        ):
            raise CapacityExceeded(
                f"Pool at {policy.max_nodes} nodes with {depth_before} requests queued",
                max_nodes=policy.max_nodes,
                queue_depth=depth_before,
                retry_after=policy.cold_start_timeout_ms / 1000.0,
            )

        depends_on = self.autoscaler.scale_up_for_demand()
        request = self.queue.enqueue(
            capability,
            timeout_ms=policy.cold_start_timeout_ms,
            depends_on=depends_on,
        )
        self.autoscaler.on_backlog(depth_before, self.queue.depth())
        # A worker may have turned warm between the claim and the enqueue
        self.queue.drain(self.registry.claim)

        try:
            worker = await request.wait()
        except asyncio.CancelledError:
            self.queue.discard(request.id)
            raise
        return self._result(worker, queued=True, started=started)

    def _result(self, worker: Worker, queued: bool, started: float) -> RouteResult:
        return RouteResult(
            endpoint=worker.endpoint,
            worker_id=worker.id,
            queued=queued,
            waited_ms=(self._clock() - started) * 1000,
            used_fallback=self._backend.fallback,
        )

    def report_error(self, worker_id: str) -> bool:
        """Record a failed request on a running worker. Never evicts by itself."""
        return self.registry.record_error(worker_id)

    def stop_worker(self, worker_id: str) -> bool:
        """Explicitly drain and destroy one worker."""
        return self.autoscaler.retire(worker_id)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def nodes(self) -> List[Worker]:
        return self.registry.snapshot()

    def node(self, worker_id: str) -> Optional[Worker]:
        return self.registry.get(worker_id)

    def stats(self) -> PoolStats:
        return self._stats.collect(total_requests=self.total_requests)
