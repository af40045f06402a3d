"""
Container runtime detection and abstraction.

Handles detection of available container runtimes (Podman vs Docker)
and provides unified command interface.
"""

from __future__ import annotations

import shutil
import subprocess
import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class ContainerRuntime(Enum):
    PODMAN = "podman"
    DOCKER = "docker"


def _runtime_works(command: str) -> bool:
    """Verify the runtime CLI is installed and its daemon/socket answers."""
    if not shutil.which(command):
        return False
    try:
        subprocess.run([command, "info"], capture_output=True, check=True, timeout=5)
        return True
    except (subprocess.SubprocessError, OSError):
        return False


def detect_runtime(preferred: Optional[str] = None) -> ContainerRuntime:
    """
    Detect available container runtime.

    Priority:
    1. The explicitly preferred runtime, if given and working
    2. Podman (rootless/daemonless)
    3. Docker

    Raises:
        RuntimeError: If no supported runtime is found/working.
    """
    candidates = [ContainerRuntime.PODMAN, ContainerRuntime.DOCKER]
    if preferred:
        wanted = ContainerRuntime(preferred)
        candidates.remove(wanted)
        candidates.insert(0, wanted)

    for runtime in candidates:
        if _runtime_works(runtime.value):
            logger.info("Detected container runtime: %s", runtime.value)
            return runtime

    raise RuntimeError(
        "No container runtime available. Please install Podman or Docker."
    )


def get_runtime_command(runtime: ContainerRuntime) -> str:
    """Return the CLI command for the runtime."""
    return runtime.value
