"""
Admission queue.

Holds requests that could not be satisfied immediately, in strict arrival
order, until a worker becomes available or the request's deadline elapses.

Each PendingRequest carries a single-fire asyncio.Future. Whoever removes the
request from the table (under the queue lock) owns its resolution: drain,
deadline expiry, rejection and caller cancellation all race for that removal,
and the losers find the request already gone. A request is therefore resolved
at most once.

The queue never calls into the registry while holding its own lock. The
only nesting is registry-then-queue: drain pops the head from inside the
registry claim, so a worker is assigned only to a request still waiting.
"""
from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from teepool.exceptions import CapacityExceeded, RequestTimeout, TeePoolError
from teepool.models import Worker

logger = logging.getLogger(__name__)

# (capability, confirm) -> claimed worker; confirm runs under the claimer's lock
ClaimFn = Callable[[Optional[str], Callable[[], bool]], Optional[Worker]]


@dataclass(eq=False)
class PendingRequest:
    """A caller waiting for a worker."""

    capability: Optional[str]
    enqueued_at: float
    deadline: float
    future: "asyncio.Future[Worker]"
    id: str = field(default_factory=lambda: f"req-{uuid.uuid4().hex[:12]}")
    # Creation attempt this request is waiting on, if any
    depends_on: Optional[str] = None
    timeout_ms: float = 0.0
    _timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    async def wait(self) -> Worker:
        """Wait for the assigned worker. Raises the resolution error, if any."""
        return await self.future


class AdmissionQueue:
    """
    FIFO holding area for requests awaiting capacity.

    Must be used from a running event loop: enqueue() arms the deadline timer
    on the current loop.

    Usage:
        queue = AdmissionQueue(max_depth=1000)
        request = queue.enqueue("inference", timeout_ms=60_000)

        # When a worker turns warm
        queue.drain(registry.claim)

        worker = await request.wait()
    """

    def __init__(
        self,
        max_depth: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_depth = max_depth
        self._clock = clock
        self._pending: "OrderedDict[str, PendingRequest]" = OrderedDict()
        self._lock = threading.Lock()

    def depth(self) -> int:
        with self._lock:
            return len(self._pending)

    def __len__(self) -> int:
        return self.depth()

    def pending(self) -> List[PendingRequest]:
        """Queued requests in arrival order (the handles themselves)."""
        with self._lock:
            return list(self._pending.values())

    def enqueue(
        self,
        capability: Optional[str],
        timeout_ms: float,
        depends_on: Optional[str] = None,
    ) -> PendingRequest:
        """
        Append a request to the tail and arm its deadline.

        Raises:
            CapacityExceeded: If the queue already holds max_depth requests.
        """
        loop = asyncio.get_running_loop()
        now = self._clock()
        request = PendingRequest(
            capability=capability,
            enqueued_at=now,
            deadline=now + timeout_ms / 1000.0,
            future=loop.create_future(),
            depends_on=depends_on,
            timeout_ms=timeout_ms,
        )

        with self._lock:
            if self._max_depth is not None and len(self._pending) >= self._max_depth:
                raise CapacityExceeded(
                    f"Admission queue full ({len(self._pending)} waiting)",
                    queue_depth=len(self._pending),
                    retry_after=timeout_ms / 1000.0,
                )
            self._pending[request.id] = request
            request._timer = loop.call_later(
                timeout_ms / 1000.0, self._expire, request.id
            )

        logger.debug(
            "Queued request %s (capability=%s, depends_on=%s)",
            request.id,
            capability,
            depends_on,
        )
        return request

    def drain(self, claim_fn: ClaimFn) -> int:
        """
        Serve queued requests in arrival order while workers are available.

        claim_fn must atomically find and assign a warm worker, so warmth is
        re-verified at pop time rather than trusted from the notification
        that triggered the drain. It is handed a confirm callback that pops
        the head from inside the claim; a head that expired or was rejected
        meanwhile leaves the worker unassigned. Stops at the first head that
        cannot be served; no reordering.

        Returns:
            Number of requests resolved with an endpoint.
        """
        served = 0
        while True:
            with self._lock:
                if not self._pending:
                    break
                head = next(iter(self._pending.values()))
                abandoned = head.future.done()
                if abandoned:
                    del self._pending[head.id]

            if abandoned:
                # Caller stopped waiting; drop it without spending a worker
                self._settle(head)
                continue

            popped: List[Optional[PendingRequest]] = []

            def take_head(request_id: str = head.id) -> bool:
                # Runs under the registry lock (registry-then-queue nesting)
                with self._lock:
                    popped.append(self._pending.pop(request_id, None))
                return popped[0] is not None

            worker = claim_fn(head.capability, take_head)
            if worker is None:
                if popped:
                    # Expired or rejected while a worker was being claimed
                    logger.debug("Request %s left the queue during drain", head.id)
                    continue
                break

            self._settle(popped[0], worker=worker)
            served += 1

        if served:
            logger.debug("Drained %d queued request(s)", served)
        return served

    def reject_dependents(self, worker_id: str, exc: TeePoolError) -> int:
        """Reject every request waiting on the given creation attempt."""
        with self._lock:
            victims = [r for r in self._pending.values() if r.depends_on == worker_id]
            for request in victims:
                del self._pending[request.id]

        for request in victims:
            self._settle(request, exc=exc)
        if victims:
            logger.warning(
                "Rejected %d request(s) waiting on failed worker %s",
                len(victims),
                worker_id,
            )
        return len(victims)

    def reject_all(self, exc: TeePoolError) -> int:
        with self._lock:
            victims = list(self._pending.values())
            self._pending.clear()

        for request in victims:
            self._settle(request, exc=exc)
        return len(victims)

    def discard(self, request_id: str) -> bool:
        """Forget a request whose caller stopped waiting."""
        with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None:
            return False
        self._settle(request)
        return True

    def _expire(self, request_id: str) -> None:
        with self._lock:
            request = self._pending.pop(request_id, None)
        if request is None:
            return

        logger.info(
            "Request %s timed out after %.0fms in queue", request.id, request.timeout_ms
        )
        self._settle(
            request,
            exc=RequestTimeout(
                f"No worker became available within {request.timeout_ms:.0f}ms",
                request_id=request.id,
                timeout_ms=request.timeout_ms,
                worker_id=request.depends_on,
                retry_after=request.timeout_ms / 1000.0,
            ),
        )

    @staticmethod
    def _settle(
        request: PendingRequest,
        worker: Optional[Worker] = None,
        exc: Optional[BaseException] = None,
    ) -> None:
        """Resolve a request already removed from the table."""
        if request._timer is not None:
            request._timer.cancel()
            request._timer = None

        future = request.future
        if future.done():
            # Caller cancelled its wait
            return
        if exc is not None:
            future.set_exception(exc)
        elif worker is not None:
            future.set_result(worker)
        else:
            future.cancel()
