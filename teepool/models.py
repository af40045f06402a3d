from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkerStatus(str, Enum):
    """Lifecycle status of a worker node."""

    COLD = "cold"
    STARTING = "starting"
    WARM = "warm"  # running, idle, ready
    HOT = "hot"  # running, assigned to active traffic
    DRAINING = "draining"  # selected for removal, not assignable
    STOPPED = "stopped"
    ERROR = "error"


class Warmth(str, Enum):
    """Routing priority derived from status."""

    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


ASSIGNABLE = frozenset({WorkerStatus.WARM, WorkerStatus.HOT})


class TEEDescriptor(BaseModel):
    """Trusted execution environment facts reported by a worker.

    The attestation id is stored as received and never validated here.
    """

    model_config = ConfigDict(frozen=True)

    provider_type: str = "unknown"
    hardware_type: str = "unknown"
    attestation_id: Optional[str] = None


class WorkerSpec(BaseModel):
    """Template describing what a provisioning backend should bring up."""

    model_config = ConfigDict(frozen=True)

    image: str = Field(..., description="Container image or deployment template")
    cpu_cores: int = Field(2, ge=1, le=64)
    memory_gb: int = Field(4, ge=1, le=128)
    disk_gb: int = Field(20, ge=10, le=1000)
    gpu_type: Optional[str] = Field(None, description="GPU model, e.g. H100")
    env: Dict[str, str] = Field(default_factory=dict)
    port: int = Field(8080, ge=1, le=65535, description="Port the worker listens on")
    health_path: str = "/health"
    capabilities: FrozenSet[str] = Field(
        default_factory=frozenset,
        description="Workload classes served; empty serves any capability",
    )
    confidential: bool = True

    def serves(self, capability: Optional[str]) -> bool:
        """True if workers built from this template can serve the capability."""
        if capability is None or not self.capabilities:
            return True
        return capability in self.capabilities


class PoolPolicy(BaseModel):
    """Immutable autoscaling policy. Durations are in milliseconds.

    min_warm_nodes may exceed max_nodes; the pool then keeps max_nodes warm.
    """

    model_config = ConfigDict(frozen=True)

    min_warm_nodes: int = Field(1, ge=0)
    max_nodes: int = Field(10, ge=1)
    cold_start_timeout_ms: float = Field(60_000, gt=0)
    idle_timeout_ms: float = Field(300_000, gt=0)
    # Queue depth that forces an extra scale-up even if one is starting
    scale_up_queue_threshold: int = Field(5, ge=1)
    # Idle time after which a warm worker may be removed (subject to min_warm_nodes)
    scale_down_idle_threshold_ms: float = Field(600_000, gt=0)

    tick_interval_seconds: float = Field(10.0, gt=0)
    max_queue_depth: int = Field(1000, ge=1)
    # None: steady-state errors never evict a worker
    max_error_count: Optional[int] = Field(None, ge=1)
    # Per-tick liveness probe of warm/hot workers
    health_check_timeout_ms: float = Field(5_000, gt=0)


@dataclass
class ProvisionedWorker:
    """What a backend reports once a worker is healthy."""

    endpoint: str
    handle: str  # container id or deployment id
    tee: TEEDescriptor = field(default_factory=TEEDescriptor)


def new_worker_id() -> str:
    return f"node-{uuid.uuid4().hex[:12]}"


@dataclass
class Worker:
    """One compute node. Owned by NodePoolRegistry; callers get copies."""

    spec: WorkerSpec
    id: str = field(default_factory=new_worker_id)
    endpoint: str = ""
    status: WorkerStatus = WorkerStatus.STARTING
    started_at: float = field(default_factory=time.monotonic)
    last_activity_at: float = field(default_factory=time.monotonic)
    cold_start_duration_ms: Optional[float] = None
    requests_served: int = 0
    error_count: int = 0
    tee: TEEDescriptor = field(default_factory=TEEDescriptor)

    @property
    def warmth(self) -> Warmth:
        if self.status == WorkerStatus.HOT:
            return Warmth.HOT
        if self.status == WorkerStatus.WARM:
            return Warmth.WARM
        return Warmth.COLD

    @property
    def is_assignable(self) -> bool:
        return self.status in ASSIGNABLE

    def matches(self, capability: Optional[str]) -> bool:
        """True if this worker can serve the requested capability."""
        return self.spec.serves(capability)

    def idle_seconds(self, now: float) -> float:
        return max(0.0, now - self.last_activity_at)
