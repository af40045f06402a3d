from __future__ import annotations

import asyncio
from typing import List, Optional, Set

from teepool.backends.base import ProvisioningBackend
from teepool.models import ProvisionedWorker, TEEDescriptor, Worker, WorkerSpec


class FakeBackend(ProvisioningBackend):
    """
    In-memory backend for driving the pool deterministically.

    Behaviour is controlled through attributes:
    - gate: when set to an asyncio.Event, create() blocks until it is set
    - delay: seconds create() sleeps before answering
    - fail: exception create() raises instead of returning a worker
    - destroy_ok: what destroy() reports
    - unhealthy: worker ids whose health check fails
    """

    name = "fake"
    fallback = True

    def __init__(self) -> None:
        super().__init__()
        self.gate: Optional[asyncio.Event] = None
        self.delay = 0.0
        self.fail: Optional[Exception] = None
        self.destroy_ok = True
        self.unhealthy: Set[str] = set()
        self.closed = False
        # Call history keeps tests inspectable.
        self.created: List[str] = []
        self.destroyed: List[str] = []
        self.timeouts: List[Optional[float]] = []
        self.health_checks: List[str] = []

    async def create(
        self,
        worker_id: str,
        spec: WorkerSpec,
        timeout: Optional[float] = None,
    ) -> ProvisionedWorker:
        self.created.append(worker_id)
        self.timeouts.append(timeout)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail

        handle = f"h-{worker_id}"
        self._remember(worker_id, handle)
        return ProvisionedWorker(
            endpoint=f"http://fake/{worker_id}",
            handle=handle,
            tee=TEEDescriptor(provider_type="fake", hardware_type="simulated"),
        )

    async def destroy(self, worker_id: str) -> bool:
        self.destroyed.append(worker_id)
        if self.destroy_ok:
            self._forget(worker_id)
        return self.destroy_ok

    async def check_health(self, worker: Worker, timeout: float = 5.0) -> bool:
        self.health_checks.append(worker.id)
        return worker.id not in self.unhealthy

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)
