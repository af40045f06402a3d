"""
Provisioning backend contract.

A backend materializes a worker and tears it down. The autoscaler is written
against this interface only; the concrete variant is chosen once, when the
orchestrator is built.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from teepool.backends.probe import probe_once
from teepool.models import ProvisionedWorker, Worker, WorkerSpec


class ProvisioningBackend(ABC):
    """
    Strategy that brings a worker online and takes it down.

    create() may take tens of seconds: it returns only once the worker's
    health signal reports ready, or raises ProvisioningFailure. Backends keep
    their own worker id -> handle mapping so destroy() can be keyed by the
    registry's worker id.
    """

    name: str = "backend"
    # True for variants standing in for real confidential hardware
    fallback: bool = False

    def __init__(self) -> None:
        self._handles: Dict[str, str] = {}
        self._handles_lock = threading.Lock()

    @abstractmethod
    async def create(
        self,
        worker_id: str,
        spec: WorkerSpec,
        timeout: Optional[float] = None,
    ) -> ProvisionedWorker:
        """
        Provision a worker and wait until it is healthy.

        Args:
            worker_id: Registry id of the worker being created
            spec: What to bring up
            timeout: Upper bound in seconds for the whole cold start

        Raises:
            ProvisioningFailure: Creation failed or the worker never became healthy.
        """

    @abstractmethod
    async def destroy(self, worker_id: str) -> bool:
        """Tear the worker down. Returns True once teardown is confirmed."""

    async def check_health(self, worker: Worker, timeout: float = 5.0) -> bool:
        """Probe a running worker's health path once."""
        async with httpx.AsyncClient() as client:
            return await probe_once(
                client, worker.endpoint + worker.spec.health_path, timeout=timeout
            )

    async def close(self) -> None:
        """Release backend resources (HTTP clients, temp files)."""

    def handle_for(self, worker_id: str) -> Optional[str]:
        with self._handles_lock:
            return self._handles.get(worker_id)

    def _remember(self, worker_id: str, handle: str) -> None:
        with self._handles_lock:
            self._handles[worker_id] = handle

    def _forget(self, worker_id: str) -> Optional[str]:
        with self._handles_lock:
            return self._handles.pop(worker_id, None)
