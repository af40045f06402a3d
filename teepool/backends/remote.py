"""
Remote fleet backend.

Provisions confidential VMs through an external fleet-management API:

    POST   /api/v1/deployments        -> {"id": ...}
    GET    /api/v1/deployments/{id}   -> {"status": creating|running|failed, "endpoint": ...}
    DELETE /api/v1/deployments/{id}

Status polling tolerates transient failures (network errors, 5xx): they mean
"not ready yet". The whole wait, including each API call, is bounded by the
cold start timeout.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from teepool.backends.base import ProvisioningBackend
from teepool.exceptions import ProvisioningFailure
from teepool.models import ProvisionedWorker, TEEDescriptor, WorkerSpec

logger = logging.getLogger(__name__)

DEPLOYMENTS_PATH = "/api/v1/deployments"


class RemoteFleetBackend(ProvisioningBackend):
    """
    Workers as remote confidential deployments.

    Usage:
        backend = RemoteFleetBackend(
            endpoint="https://fleet.example.com",
            api_key=os.environ["TEEPOOL_FLEET_API_KEY"],
            project_id="proj-123",
        )
        worker = await backend.create("node-1", spec, timeout=60)
    """

    name = "remote"
    fallback = False

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        project_id: Optional[str] = None,
        poll_interval: float = 5.0,
        default_timeout: float = 120.0,
        request_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__()
        self._endpoint = endpoint.rstrip("/")
        self._project_id = project_id
        self._poll_interval = poll_interval
        self._default_timeout = default_timeout

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._endpoint,
            headers=headers,
            timeout=request_timeout,
        )

    def build_payload(self, worker_id: str, spec: WorkerSpec) -> Dict[str, Any]:
        resources: Dict[str, Any] = {
            "cpu": spec.cpu_cores,
            "memory": f"{spec.memory_gb}GB",
            "disk": f"{spec.disk_gb}GB",
        }
        if spec.gpu_type:
            resources["gpu"] = {"type": spec.gpu_type, "count": 1}
        return {
            "project_id": self._project_id,
            "name": worker_id,
            "image": spec.image,
            "env": dict(spec.env),
            "resources": resources,
            "confidential": {
                "enabled": spec.confidential,
                "attestation": spec.confidential,
            },
            "port": spec.port,
            "health_check": {"path": spec.health_path, "interval": 30, "timeout": 10},
        }

    async def create(
        self,
        worker_id: str,
        spec: WorkerSpec,
        timeout: Optional[float] = None,
    ) -> ProvisionedWorker:
        limit = self._default_timeout if timeout is None else timeout
        deadline = time.monotonic() + limit

        try:
            response = await asyncio.wait_for(
                self._client.post(DEPLOYMENTS_PATH, json=self.build_payload(worker_id, spec)),
                timeout=limit,
            )
        except asyncio.TimeoutError as e:
            raise _timed_out(worker_id, limit, stage="create") from e
        except httpx.HTTPError as e:
            raise ProvisioningFailure(
                f"Fleet create call failed: {type(e).__name__}: {e}",
                worker_id=worker_id,
            ) from e

        if response.status_code >= 400:
            raise ProvisioningFailure(
                f"Fleet deployment failed: {response.status_code} - {response.text}",
                worker_id=worker_id,
                details={"status_code": response.status_code},
            )

        deployment_id = str(response.json()["id"])
        self._remember(worker_id, deployment_id)
        logger.info("Fleet deployment %s created for %s", deployment_id, worker_id)

        try:
            return await self._wait_for_running(worker_id, deployment_id, deadline, limit)
        except ProvisioningFailure:
            await self.destroy(worker_id)
            raise

    async def _wait_for_running(
        self,
        worker_id: str,
        deployment_id: str,
        deadline: float,
        limit: float,
    ) -> ProvisionedWorker:
        polls = 0
        while True:
            polls += 1
            try:
                status = await asyncio.wait_for(
                    self.poll(deployment_id),
                    timeout=max(0.0, deadline - time.monotonic()),
                )
            except asyncio.TimeoutError:
                # Slow status call; the deadline check below decides
                status = None
            if status is not None:
                state = status.get("status")
                if state == "running" and status.get("endpoint"):
                    return ProvisionedWorker(
                        endpoint=status["endpoint"],
                        handle=deployment_id,
                        tee=_descriptor_from_status(status),
                    )
                if state == "failed":
                    raise ProvisioningFailure(
                        f"Deployment failed: {status.get('error') or 'unknown error'}",
                        worker_id=worker_id,
                        details={"deployment_id": deployment_id},
                    )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise _timed_out(
                    worker_id, limit, deployment_id=deployment_id, polls=polls
                )
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def poll(self, deployment_id: str) -> Optional[Dict[str, Any]]:
        """Fetch deployment status. None on any transient failure."""
        try:
            response = await self._client.get(f"{DEPLOYMENTS_PATH}/{deployment_id}")
        except httpx.HTTPError as e:
            logger.debug("Poll of %s failed: %s", deployment_id, e)
            return None
        if response.status_code != 200:
            logger.debug("Poll of %s returned %d", deployment_id, response.status_code)
            return None
        try:
            return response.json()
        except ValueError:
            return None

    async def destroy(self, worker_id: str) -> bool:
        deployment_id = self._forget(worker_id)
        if deployment_id is None:
            return True

        try:
            response = await self._client.delete(f"{DEPLOYMENTS_PATH}/{deployment_id}")
        except httpx.HTTPError as e:
            logger.warning("Delete of deployment %s failed: %s", deployment_id, e)
            self._remember(worker_id, deployment_id)
            return False

        if response.status_code < 300 or response.status_code == 404:
            return True

        logger.warning(
            "Delete of deployment %s returned %d", deployment_id, response.status_code
        )
        self._remember(worker_id, deployment_id)
        return False

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _descriptor_from_status(status: Dict[str, Any]) -> TEEDescriptor:
    attestation = status.get("attestation") or {}
    attestation_id = None
    if isinstance(attestation, dict):
        attestation_id = attestation.get("quote") or attestation.get("id")
    elif attestation:
        attestation_id = str(attestation)
    return TEEDescriptor(
        provider_type=status.get("provider", "remote"),
        hardware_type=status.get("tee_type", "intel-tdx"),
        attestation_id=attestation_id,
    )


def _timed_out(worker_id: str, limit: float, **details: Any) -> ProvisioningFailure:
    return ProvisioningFailure(
        f"Deployment for {worker_id} not running after {limit:.1f}s",
        worker_id=worker_id,
        code="provisioning_timeout",
        details=details,
    )
