"""
Local container backend.

Runs each worker as a detached container on this host, published on a free
local port, and health-probes it until ready. Used when no fleet API is
configured; the TEE is simulated.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import time
from typing import Callable, List, Optional, Sequence, Tuple

from teepool.backends.base import ProvisioningBackend
from teepool.backends.probe import wait_until_healthy
from teepool.backends.runtime import ContainerRuntime, detect_runtime, get_runtime_command
from teepool.exceptions import HealthCheckFailure, ProvisioningFailure
from teepool.models import ProvisionedWorker, TEEDescriptor, WorkerSpec

logger = logging.getLogger(__name__)


def find_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


class LocalContainerBackend(ProvisioningBackend):
    """
    Workers as local Podman/Docker containers.

    Usage:
        backend = LocalContainerBackend(runtime=ContainerRuntime.DOCKER)
        worker = await backend.create("node-1", WorkerSpec(image="ghcr.io/acme/worker"))
        ...
        await backend.destroy("node-1")
    """

    name = "local"
    fallback = True

    def __init__(
        self,
        runtime: Optional[ContainerRuntime] = None,
        host: str = "127.0.0.1",
        startup_timeout: float = 30.0,
        probe_interval: float = 1.0,
        extra_args: Optional[Sequence[str]] = None,
        port_allocator: Optional[Callable[[], int]] = None,
    ) -> None:
        super().__init__()
        self._runtime = runtime or detect_runtime()
        self._host = host
        self._startup_timeout = startup_timeout
        self._probe_interval = probe_interval
        self._extra_args = list(extra_args or [])
        self._port_allocator = port_allocator or (lambda: find_free_port(host))

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    def build_run_command(self, worker_id: str, spec: WorkerSpec, port: int) -> List[str]:
        cmd = get_runtime_command(self._runtime)
        run_cmd = [
            cmd, "run", "-d",
            "--name", worker_id,
            "-p", f"{self._host}:{port}:{spec.port}",
        ]
        for key, value in sorted(spec.env.items()):
            run_cmd.extend(["-e", f"{key}={value}"])
        run_cmd.append(f"--memory={spec.memory_gb}g")
        run_cmd.append(f"--cpus={spec.cpu_cores}")
        if spec.gpu_type:
            run_cmd.append("--gpus=all")
        run_cmd.extend(self._extra_args)
        run_cmd.append(spec.image)
        return run_cmd

    async def create(
        self,
        worker_id: str,
        spec: WorkerSpec,
        timeout: Optional[float] = None,
    ) -> ProvisionedWorker:
        port = self._port_allocator()
        run_cmd = self.build_run_command(worker_id, spec, port)
        limit = self._startup_timeout if timeout is None else min(self._startup_timeout, timeout)
        deadline = time.monotonic() + limit

        logger.info("Starting local container %s on port %d", worker_id, port)
        try:
            returncode, stdout, stderr = await self._exec(run_cmd, timeout=limit)
        except asyncio.TimeoutError as e:
            # Container is named after the worker; remove it if it got created
            self._remember(worker_id, worker_id)
            await self.destroy(worker_id)
            raise ProvisioningFailure(
                f"Container start did not finish within {limit:.1f}s",
                worker_id=worker_id,
                code="provisioning_timeout",
            ) from e
        if returncode != 0:
            raise ProvisioningFailure(
                f"Failed to start container: {stderr.strip()}",
                worker_id=worker_id,
            )

        container_id = stdout.strip() or worker_id
        self._remember(worker_id, container_id)

        endpoint = f"http://{self._host}:{port}"
        try:
            await wait_until_healthy(
                endpoint + spec.health_path,
                timeout=max(0.0, deadline - time.monotonic()),
                interval=self._probe_interval,
                worker_id=worker_id,
            )
        except HealthCheckFailure:
            logger.warning("Container %s never became healthy; removing it", worker_id)
            await self.destroy(worker_id)
            raise

        return ProvisionedWorker(
            endpoint=endpoint,
            handle=container_id,
            tee=TEEDescriptor(provider_type="local", hardware_type="simulated"),
        )

    async def destroy(self, worker_id: str) -> bool:
        container_id = self._forget(worker_id)
        if container_id is None:
            return True

        cmd = get_runtime_command(self._runtime)
        await self._exec([cmd, "stop", container_id])
        returncode, _, stderr = await self._exec([cmd, "rm", "-f", container_id])
        if returncode != 0:
            logger.warning("Failed to remove container %s: %s", container_id, stderr.strip())
            self._remember(worker_id, container_id)
            return False
        return True

    async def _exec(
        self, args: List[str], timeout: Optional[float] = None
    ) -> Tuple[int, str, str]:
        """Run a runtime CLI command. Raises asyncio.TimeoutError past timeout."""
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return 127, "", str(e)
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise
        return proc.returncode or 0, stdout.decode(), stderr.decode()
