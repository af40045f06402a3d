"""
Provisioning backends.

Two interchangeable strategies behind ProvisioningBackend:
- LocalContainerBackend: Podman/Docker containers on this host (simulated TEE)
- RemoteFleetBackend: confidential VMs through a fleet-management HTTP API

build_backend() picks one from Settings at construction time.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from teepool.backends.base import ProvisioningBackend
from teepool.backends.local import LocalContainerBackend, find_free_port
from teepool.backends.probe import probe_once, wait_until_healthy
from teepool.backends.remote import RemoteFleetBackend
from teepool.backends.runtime import ContainerRuntime, detect_runtime, get_runtime_command

if TYPE_CHECKING:
    from teepool.config import Settings


def build_backend(settings: "Settings") -> ProvisioningBackend:
    """Construct the configured backend variant."""
    if settings.backend == "remote":
        return RemoteFleetBackend(
            endpoint=settings.fleet_endpoint,
            api_key=settings.fleet_api_key,
            project_id=settings.fleet_project_id,
            poll_interval=settings.fleet_poll_interval_seconds,
            default_timeout=settings.cold_start_timeout_ms / 1000.0,
        )
    if settings.backend == "local":
        runtime = detect_runtime(settings.container_runtime)
        return LocalContainerBackend(
            runtime=runtime,
            startup_timeout=settings.local_startup_timeout_seconds,
        )
    raise ValueError(f"Unknown backend {settings.backend!r}; expected 'local' or 'remote'")


__all__ = [
    "ProvisioningBackend",
    "LocalContainerBackend",
    "RemoteFleetBackend",
    "ContainerRuntime",
    "detect_runtime",
    "get_runtime_command",
    "find_free_port",
    "probe_once",
    "wait_until_healthy",
    "build_backend",
]
