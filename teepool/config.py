"""
Configuration from environment variables.

Usage:
    from teepool.config import get_settings

    settings = get_settings()
    policy = settings.policy()
    spec = settings.worker_spec()
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from typing import Dict, Optional

from teepool.models import PoolPolicy, WorkerSpec


def parse_env_vars(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse per-worker environment variables.

    Accepts a JSON object ('{"A": "1"}') or comma separated pairs ("A=1,B=2").
    """
    if not raw or not raw.strip():
        return {}
    raw = raw.strip()
    if raw.startswith("{"):
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("TEEPOOL_WORKER_ENV JSON must be an object")
        return {str(k): str(v) for k, v in data.items()}

    result: Dict[str, str] = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        if "=" not in pair:
            raise ValueError(f"Invalid TEEPOOL_WORKER_ENV entry: {pair!r}")
        key, value = pair.split("=", 1)
        result[key.strip()] = value.strip()
    return result


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


class Settings:
    """Orchestrator configuration loaded from environment variables."""

    def __init__(self) -> None:
        # Server
        self.host: str = os.getenv("TEEPOOL_HOST", "0.0.0.0")
        self.port: int = int(os.getenv("TEEPOOL_PORT", "8000"))
        self.api_key: Optional[str] = os.getenv("TEEPOOL_API_KEY")

        # Backend selection: "local" or "remote"
        self.backend: str = os.getenv("TEEPOOL_BACKEND", "local")

        # Worker template
        self.image: str = os.getenv("TEEPOOL_IMAGE", "ghcr.io/teepool/compute-node:latest")
        self.worker_env: Dict[str, str] = parse_env_vars(os.getenv("TEEPOOL_WORKER_ENV"))
        self.worker_port: int = int(os.getenv("TEEPOOL_WORKER_PORT", "8080"))
        self.health_path: str = os.getenv("TEEPOOL_HEALTH_PATH", "/health")
        self.cpu_cores: int = int(os.getenv("TEEPOOL_CPU_CORES", "2"))
        self.memory_gb: int = int(os.getenv("TEEPOOL_MEMORY_GB", "8"))
        self.gpu_type: Optional[str] = os.getenv("TEEPOOL_GPU_TYPE") or None
        capabilities = os.getenv("TEEPOOL_CAPABILITIES", "")
        self.capabilities = frozenset(c.strip() for c in capabilities.split(",") if c.strip())

        # Local backend
        self.container_runtime: Optional[str] = os.getenv("TEEPOOL_CONTAINER_RUNTIME") or None
        self.local_startup_timeout_seconds: float = float(
            os.getenv("TEEPOOL_LOCAL_STARTUP_TIMEOUT_SECONDS", "30")
        )

        # Remote fleet backend
        self.fleet_endpoint: str = os.getenv(
            "TEEPOOL_FLEET_ENDPOINT", "https://cloud.phala.network"
        )
        self.fleet_api_key: Optional[str] = os.getenv("TEEPOOL_FLEET_API_KEY")
        self.fleet_project_id: Optional[str] = os.getenv("TEEPOOL_FLEET_PROJECT_ID")
        self.fleet_poll_interval_seconds: float = float(
            os.getenv("TEEPOOL_FLEET_POLL_INTERVAL_SECONDS", "5")
        )

        # Pool policy
        self.min_warm_nodes: int = int(os.getenv("TEEPOOL_MIN_WARM_NODES", "1"))
        self.max_nodes: int = int(os.getenv("TEEPOOL_MAX_NODES", "10"))
        self.cold_start_timeout_ms: float = float(
            os.getenv("TEEPOOL_COLD_START_TIMEOUT_MS", "60000")
        )
        self.idle_timeout_ms: float = float(os.getenv("TEEPOOL_IDLE_TIMEOUT_MS", "300000"))
        self.scale_up_queue_threshold: int = int(
            os.getenv("TEEPOOL_SCALE_UP_QUEUE_THRESHOLD", "5")
        )
        self.scale_down_idle_threshold_ms: float = float(
            os.getenv("TEEPOOL_SCALE_DOWN_IDLE_THRESHOLD_MS", "600000")
        )
        self.tick_interval_seconds: float = float(
            os.getenv("TEEPOOL_TICK_INTERVAL_SECONDS", "10")
        )
        self.max_queue_depth: int = int(os.getenv("TEEPOOL_MAX_QUEUE_DEPTH", "1000"))
        self.max_error_count: Optional[int] = _optional_int("TEEPOOL_MAX_ERROR_COUNT")
        self.health_check_timeout_ms: float = float(
            os.getenv("TEEPOOL_HEALTH_CHECK_TIMEOUT_MS", "5000")
        )

    @property
    def auth_required(self) -> bool:
        """Authentication is required if TEEPOOL_API_KEY is set."""
        return self.api_key is not None

    def policy(self) -> PoolPolicy:
        return PoolPolicy(
            min_warm_nodes=self.min_warm_nodes,
            max_nodes=self.max_nodes,
            cold_start_timeout_ms=self.cold_start_timeout_ms,
            idle_timeout_ms=self.idle_timeout_ms,
            scale_up_queue_threshold=self.scale_up_queue_threshold,
            scale_down_idle_threshold_ms=self.scale_down_idle_threshold_ms,
            tick_interval_seconds=self.tick_interval_seconds,
            max_queue_depth=self.max_queue_depth,
            max_error_count=self.max_error_count,
            health_check_timeout_ms=self.health_check_timeout_ms,
        )

    def worker_spec(self) -> WorkerSpec:
        return WorkerSpec(
            image=self.image,
            cpu_cores=self.cpu_cores,
            memory_gb=self.memory_gb,
            gpu_type=self.gpu_type,
            env=self.worker_env,
            port=self.worker_port,
            health_path=self.health_path,
            capabilities=self.capabilities,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear settings cache. For testing only."""
    get_settings.cache_clear()
