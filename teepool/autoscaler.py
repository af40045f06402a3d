"""
Autoscaler control loop.

A policy evaluator over the registry and the admission queue. It keeps no
pool state of its own, only handles to the background provisioning and
teardown tasks it started.

Per tick:
    1. Probe every warm/hot worker's health path once; a failed probe
       counts as an error on that worker.
    2. Count warm/hot and starting workers.
    3. Demote hot workers idle longer than idle_timeout / 3 back to warm.
    4. Drain warm workers idle past the scale-down threshold, oldest first,
       while more than min_warm_nodes remain.
    5. Backlog: queue depth >= threshold, nothing starting, room left ->
       start one worker.
    6. Minimum warm: below min_warm_nodes, nothing starting, room left ->
       start one worker. The rest of the deficit waits for later ticks.

Slow backend calls never run under the registry lock: a STARTING slot is
reserved synchronously, creation runs in its own task, and the result is
committed with a short registry call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Coroutine, List, Optional, Set

from teepool.admission import AdmissionQueue
from teepool.backends.base import ProvisioningBackend
from teepool.exceptions import ProvisioningFailure
from teepool.models import PoolPolicy, Worker, WorkerSpec, WorkerStatus
from teepool.registry import NodePoolRegistry

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What a single policy evaluation decided."""

    unhealthy: List[str] = field(default_factory=list)
    demoted: List[str] = field(default_factory=list)
    drained: List[str] = field(default_factory=list)
    launched: List[str] = field(default_factory=list)


class Autoscaler:
    """
    Scale up/down control loop for the worker pool.

    Usage:
        autoscaler = Autoscaler(registry, queue, backend, policy, spec)
        await autoscaler.start()  # tick every policy.tick_interval_seconds

        # Later...
        await autoscaler.shutdown()
    """

    def __init__(
        self,
        registry: NodePoolRegistry,
        queue: AdmissionQueue,
        backend: ProvisioningBackend,
        policy: PoolPolicy,
        worker_spec: WorkerSpec,
    ) -> None:
        self._registry = registry
        self._queue = queue
        self._backend = backend
        self._policy = policy
        self._spec = worker_spec

        self._tasks: Set[asyncio.Task] = set()
        self._destroying: Set[str] = set()
        self._closing = False

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def policy(self) -> PoolPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start ticking on a fixed interval."""
        if self._running:
            return
        self._closing = False
        self._running = True
        self._loop_task = asyncio.create_task(self._tick_loop())
        logger.info(
            "Autoscaler started (interval=%.1fs)", self._policy.tick_interval_seconds
        )

    async def stop(self) -> None:
        """Stop ticking. Background provisioning keeps running."""
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        logger.info("Autoscaler stopped")

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
                await asyncio.sleep(self._policy.tick_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Autoscaler tick error: %s", e)
                await asyncio.sleep(1.0)

    # ------------------------------------------------------------------
    # Policy evaluation
    # ------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Evaluate the policy once against the current pool."""
        report = TickReport()
        policy = self._policy
        await self._check_health(report)

        now = self._registry.clock()
        workers = self._registry.snapshot()

        warm_count = sum(1 for w in workers if w.is_assignable)

        # Idle demotion
        demote_before = now - policy.idle_timeout_ms / 3 / 1000.0
        for worker in workers:
            if worker.status == WorkerStatus.HOT and worker.last_activity_at < demote_before:
                if self._registry.demote(worker.id, idle_before=demote_before):
                    report.demoted.append(worker.id)
        if report.demoted:
            logger.debug("Demoted %d idle hot worker(s)", len(report.demoted))
            self._queue.drain(self._registry.claim)

        # Error eviction, only when configured
        if policy.max_error_count is not None:
            for worker in workers:
                if worker.is_assignable and worker.error_count >= policy.max_error_count:
                    if self._registry.mark_draining(worker.id):
                        logger.warning(
                            "Evicting worker %s after %d errors",
                            worker.id,
                            worker.error_count,
                        )
                        warm_count -= 1
                        report.drained.append(worker.id)
                        self._schedule_teardown(worker.id)

        # Scale down
        drain_before = now - policy.scale_down_idle_threshold_ms / 1000.0
        candidates = sorted(
            (
                w
                for w in workers
                if (w.status == WorkerStatus.WARM or w.id in report.demoted)
                and w.id not in report.drained
                and w.last_activity_at < drain_before
            ),
            key=lambda w: w.last_activity_at,
        )
        for worker in candidates:
            if warm_count <= policy.min_warm_nodes:
                break
            if self._registry.mark_draining(worker.id, idle_before=drain_before):
                logger.info(
                    "Scaling down: draining worker %s (idle %.0fs)",
                    worker.id,
                    worker.idle_seconds(now),
                )
                warm_count -= 1
                report.drained.append(worker.id)
                self._schedule_teardown(worker.id)

        # Teardowns that failed on an earlier tick
        for worker in workers:
            if (
                worker.status == WorkerStatus.DRAINING
                and worker.id not in self._destroying
                and worker.id not in report.drained
            ):
                logger.info("Retrying teardown of worker %s", worker.id)
                self._schedule_teardown(worker.id)

        counts = self._registry.counts()
        starting = counts[WorkerStatus.STARTING]
        total = sum(counts.values())

        # Scale up on backlog
        if (
            self._queue.depth() >= policy.scale_up_queue_threshold
            and starting == 0
            and total < policy.max_nodes
        ):
            launched = self.launch(reason="backlog")
            if launched:
                report.launched.append(launched.id)
                starting += 1
                total += 1

        # Minimum-warm maintenance, one creation outstanding at a time
        if warm_count < policy.min_warm_nodes and starting == 0 and total < policy.max_nodes:
            launched = self.launch(reason="min_warm")
            if launched:
                report.launched.append(launched.id)

        return report

    async def _check_health(self, report: TickReport) -> None:
        """Liveness probe of running workers. Failures only count errors."""
        running = [w for w in self._registry.snapshot() if w.is_assignable]
        if not running:
            return

        timeout = self._policy.health_check_timeout_ms / 1000.0
        results = await asyncio.gather(
            *(self._backend.check_health(w, timeout=timeout) for w in running),
            return_exceptions=True,
        )
        for worker, healthy in zip(running, results):
            if healthy is True:
                continue
            if isinstance(healthy, Exception):
                logger.warning("Health check of worker %s raised: %s", worker.id, healthy)
            if self._registry.record_error(worker.id):
                logger.warning("Health check failed for worker %s", worker.id)
                report.unhealthy.append(worker.id)

    # ------------------------------------------------------------------
    # Scale up
    # ------------------------------------------------------------------

    def launch(self, reason: str = "demand", exclusive: bool = False) -> Optional[Worker]:
        """
        Reserve a STARTING slot and provision it out of line.

        Returns None if the pool is full, shutting down, or (exclusive=True)
        another worker is already starting.
        """
        if self._closing:
            return None
        worker = self._registry.insert_starting(
            self._spec, max_nodes=self._policy.max_nodes, exclusive=exclusive
        )
        if worker is None:
            return None

        logger.info("Scaling up: starting worker %s (%s)", worker.id, reason)
        self._spawn(self._provision(worker))
        return worker

    def scale_up_for_demand(self) -> Optional[str]:
        """
        Make sure a creation is in flight for a request that found no worker.

        Returns:
            Id of the creation attempt the request now depends on, or None if
            the pool is full and nothing is starting.
        """
        worker = self.launch(reason="demand", exclusive=True)
        if worker is not None:
            return worker.id
        starting = [
            w for w in self._registry.snapshot() if w.status == WorkerStatus.STARTING
        ]
        return starting[-1].id if starting else None

    def on_backlog(self, depth_before: int, depth_after: int) -> Optional[Worker]:
        """An enqueue that crosses the threshold forces one extra creation."""
        threshold = self._policy.scale_up_queue_threshold
        if depth_before < threshold <= depth_after:
            return self.launch(reason="backlog")
        return None

    async def _provision(self, worker: Worker) -> None:
        timeout = self._policy.cold_start_timeout_ms / 1000.0
        try:
            provisioned = await self._backend.create(worker.id, worker.spec, timeout=timeout)
        except asyncio.CancelledError:
            self._fail(worker.id, ProvisioningFailure("Provisioning cancelled", worker_id=worker.id))
            raise
        except Exception as e:
            if isinstance(e, ProvisioningFailure):
                failure = e
            else:
                failure = ProvisioningFailure(
                    f"Provisioning failed: {type(e).__name__}: {e}",
                    worker_id=worker.id,
                )
            self._fail(worker.id, failure)
            return

        if not self._registry.mark_warm(worker.id, provisioned.endpoint, provisioned.tee):
            logger.error("Worker %s vanished while starting; tearing it down", worker.id)
            await self._backend.destroy(worker.id)
            return

        committed = self._registry.get(worker.id)
        logger.info(
            "Worker %s warm at %s (%.0fms cold start)",
            worker.id,
            provisioned.endpoint,
            committed.cold_start_duration_ms if committed else 0.0,
        )

        if self._closing:
            self.retire(worker.id)
            return
        self._queue.drain(self._registry.claim)

    def _fail(self, worker_id: str, failure: ProvisioningFailure) -> None:
        logger.error("Provisioning of worker %s failed: %s", worker_id, failure.message)
        self._registry.mark_error(worker_id)
        self._registry.remove(worker_id)
        self._queue.reject_dependents(worker_id, failure)

    # ------------------------------------------------------------------
    # Scale down
    # ------------------------------------------------------------------

    def retire(self, worker_id: str) -> bool:
        """Explicitly drain a worker and tear it down out of line."""
        if not self._registry.mark_draining(worker_id):
            return False
        self._schedule_teardown(worker_id)
        return True

    def _schedule_teardown(self, worker_id: str) -> None:
        if worker_id in self._destroying:
            return
        self._destroying.add(worker_id)
        self._spawn(self._teardown(worker_id))

    async def _teardown(self, worker_id: str) -> None:
        try:
            destroyed = await self._backend.destroy(worker_id)
        except Exception as e:
            logger.error("Teardown of worker %s raised: %s", worker_id, e)
            destroyed = False
        finally:
            self._destroying.discard(worker_id)

        if destroyed:
            self._registry.remove(worker_id)
            logger.info("Stopped worker %s", worker_id)
        else:
            logger.warning("Teardown of worker %s not confirmed; will retry", worker_id)

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def settle(self) -> None:
        """Wait for every background provisioning and teardown task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """
        Stop the loop and retire every worker.

        Creations already in flight are awaited; a worker that finishes
        provisioning during shutdown is torn down right away.
        """
        self._closing = True
        await self.stop()

        for worker in self._registry.snapshot():
            if worker.is_assignable:
                self.retire(worker.id)
            elif worker.status == WorkerStatus.DRAINING and worker.id not in self._destroying:
                self._schedule_teardown(worker.id)

        await self.settle()
