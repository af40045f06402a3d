"""
Node pool registry.

Canonical state of every known worker. All other components read and mutate
workers only through this class. Every method takes the registry lock once and
performs its read-then-write atomically, so two callers can never race a
lookup against an assignment, and an autoscaler demotion or drain cannot undo
an assignment that landed first.

Mutations never raise for unknown workers; they return False and log.

Legal transitions:
    starting -> warm | error
    warm <-> hot
    warm | hot -> draining
    draining -> stopped (removed)
    error -> removed
"""
from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Callable, Dict, FrozenSet, List, Optional

from teepool.models import TEEDescriptor, Worker, WorkerSpec, WorkerStatus

logger = logging.getLogger(__name__)


_TRANSITIONS: Dict[WorkerStatus, FrozenSet[WorkerStatus]] = {
    WorkerStatus.STARTING: frozenset({WorkerStatus.WARM, WorkerStatus.ERROR}),
    WorkerStatus.WARM: frozenset({WorkerStatus.HOT, WorkerStatus.DRAINING}),
    WorkerStatus.HOT: frozenset({WorkerStatus.WARM, WorkerStatus.DRAINING}),
    WorkerStatus.DRAINING: frozenset({WorkerStatus.STOPPED}),
    WorkerStatus.ERROR: frozenset(),
    WorkerStatus.STOPPED: frozenset(),
    WorkerStatus.COLD: frozenset({WorkerStatus.STARTING}),
}


def is_legal_transition(current: WorkerStatus, target: WorkerStatus) -> bool:
    return target in _TRANSITIONS.get(current, frozenset())


class NodePoolRegistry:
    """
    Thread-safe table of workers keyed by id.

    Workers are kept in insertion order, so lookups prefer the oldest
    available worker. Readers receive copies; the live records never leave
    the registry.

    Usage:
        registry = NodePoolRegistry()
        worker = registry.insert_starting(spec, max_nodes=policy.max_nodes)
        registry.mark_warm(worker.id, "http://10.0.0.5:8080")

        claimed = registry.claim(capability="inference")
        if claimed:
            route_to(claimed.endpoint)
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._workers: Dict[str, Worker] = {}
        self._lock = threading.Lock()
        self._clock = clock

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find_available(self, capability: Optional[str] = None) -> Optional[Worker]:
        """First warm/hot worker matching capability, or None. Read-only."""
        with self._lock:
            worker = self._find_locked(capability)
            return dataclasses.replace(worker) if worker else None

    def get(self, worker_id: str) -> Optional[Worker]:
        with self._lock:
            worker = self._workers.get(worker_id)
            return dataclasses.replace(worker) if worker else None

    def snapshot(self) -> List[Worker]:
        """Copies of every worker; safe to inspect without the lock."""
        with self._lock:
            return [dataclasses.replace(w) for w in self._workers.values()]

    def counts(self) -> Dict[WorkerStatus, int]:
        with self._lock:
            result = {status: 0 for status in WorkerStatus}
            for worker in self._workers.values():
                result[worker.status] += 1
            return result

    # ------------------------------------------------------------------
    # Request routing
    # ------------------------------------------------------------------

    def assign(self, worker_id: str) -> bool:
        """
        Mark a worker hot and record the request.

        Returns False if the worker is gone or no longer assignable;
        the caller should search again.
        """
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or not worker.is_assignable:
                logger.debug("assign skipped for %s: not assignable", worker_id)
                return False
            self._assign_locked(worker)
            return True

    def claim(
        self,
        capability: Optional[str] = None,
        confirm: Optional[Callable[[], bool]] = None,
    ) -> Optional[Worker]:
        """
        Find and assign in one atomic step. Returns a copy of the worker.

        confirm, if given, runs under the registry lock once a worker is
        found; returning False abandons the claim with nothing assigned.
        """
        with self._lock:
            worker = self._find_locked(capability)
            if worker is None:
                return None
            if confirm is not None and not confirm():
                return None
            self._assign_locked(worker)
            return dataclasses.replace(worker)

    def record_error(self, worker_id: str) -> bool:
        """Count a steady-state request failure on a running worker."""
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or not worker.is_assignable:
                return False
            worker.error_count += 1
            return True

    # ------------------------------------------------------------------
    # Lifecycle transitions
    # ------------------------------------------------------------------

    def insert_starting(
        self,
        spec: WorkerSpec,
        max_nodes: Optional[int] = None,
        exclusive: bool = False,
    ) -> Optional[Worker]:
        """
        Reserve a slot for a new worker in STARTING state.

        Returns immediately without waiting on provisioning. Returns None if
        the pool already holds max_nodes workers, or, with exclusive=True, if
        another worker is already starting.
        """
        with self._lock:
            if max_nodes is not None and len(self._workers) >= max_nodes:
                logger.debug(
                    "insert_starting refused: %d workers at max %d",
                    len(self._workers),
                    max_nodes,
                )
                return None
            if exclusive and any(
                w.status == WorkerStatus.STARTING for w in self._workers.values()
            ):
                return None
            now = self._clock()
            worker = Worker(spec=spec, started_at=now, last_activity_at=now)
            self._workers[worker.id] = worker
            return dataclasses.replace(worker)

    def mark_warm(
        self,
        worker_id: str,
        endpoint: str,
        tee: Optional[TEEDescriptor] = None,
    ) -> bool:
        """STARTING -> WARM. Measures the cold start duration once."""
        with self._lock:
            worker = self._transition_locked(worker_id, WorkerStatus.WARM)
            if worker is None:
                return False
            now = self._clock()
            worker.endpoint = endpoint
            if tee is not None:
                worker.tee = tee
            worker.cold_start_duration_ms = (now - worker.started_at) * 1000
            worker.last_activity_at = now
            return True

    def mark_error(self, worker_id: str) -> bool:
        """STARTING -> ERROR."""
        with self._lock:
            return self._transition_locked(worker_id, WorkerStatus.ERROR) is not None

    def demote(self, worker_id: str, idle_before: float) -> bool:
        """
        HOT -> WARM, only if the worker has been idle since idle_before.

        An assignment that refreshed last_activity_at first wins.
        """
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None or worker.status != WorkerStatus.HOT:
                return False
            if worker.last_activity_at > idle_before:
                return False
            worker.status = WorkerStatus.WARM
            return True

    def mark_draining(
        self,
        worker_id: str,
        idle_before: Optional[float] = None,
    ) -> bool:
        """
        WARM/HOT -> DRAINING.

        With idle_before, the worker must also still be warm and idle since
        that instant; used by scale-down so it cannot steal a fresh assignment.
        """
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                logger.debug("mark_draining: unknown worker %s", worker_id)
                return False
            if idle_before is not None and (
                worker.status != WorkerStatus.WARM
                or worker.last_activity_at > idle_before
            ):
                return False
            return self._transition_locked(worker_id, WorkerStatus.DRAINING) is not None

    def remove(self, worker_id: str) -> bool:
        """Drop a DRAINING (teardown confirmed) or ERROR worker."""
        with self._lock:
            worker = self._workers.get(worker_id)
            if worker is None:
                logger.debug("remove: unknown worker %s", worker_id)
                return False
            if worker.status == WorkerStatus.DRAINING:
                worker.status = WorkerStatus.STOPPED
            elif worker.status != WorkerStatus.ERROR:
                logger.error(
                    "Illegal removal of worker %s in state %s",
                    worker_id,
                    worker.status.value,
                )
                return False
            del self._workers[worker_id]
            return True

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _find_locked(self, capability: Optional[str]) -> Optional[Worker]:
        for worker in self._workers.values():
            if worker.is_assignable and worker.matches(capability):
                return worker
        return None

    def _assign_locked(self, worker: Worker) -> None:
        worker.status = WorkerStatus.HOT
        worker.last_activity_at = self._clock()
        worker.requests_served += 1

    def _transition_locked(
        self,
        worker_id: str,
        target: WorkerStatus,
    ) -> Optional[Worker]:
        worker = self._workers.get(worker_id)
        if worker is None:
            logger.debug("Transition to %s skipped: unknown worker %s", target.value, worker_id)
            return None
        if not is_legal_transition(worker.status, target):
            logger.error(
                "Illegal transition for worker %s: %s -> %s",
                worker_id,
                worker.status.value,
                target.value,
            )
            return None
        worker.status = target
        return worker
