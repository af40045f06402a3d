"""
teepool - On-demand autoscaling pool of TEE compute workers.

Routing:
    from teepool import Orchestrator, PoolPolicy, WorkerSpec
    from teepool.backends import LocalContainerBackend

    orchestrator = Orchestrator(
        backend=LocalContainerBackend(),
        worker_spec=WorkerSpec(image="ghcr.io/acme/worker:latest"),
        policy=PoolPolicy(min_warm_nodes=1, max_nodes=5),
    )
    await orchestrator.start()
    result = await orchestrator.route()
    # send the workload to result.endpoint

From environment settings:
    from teepool import Orchestrator
    from teepool.config import get_settings

    orchestrator = Orchestrator.from_settings(get_settings())

HTTP server:
    teepool serve
"""

__version__ = "0.1.0"

from teepool.admission import AdmissionQueue, PendingRequest
from teepool.autoscaler import Autoscaler, TickReport
from teepool.exceptions import (
    CapacityExceeded,
    HealthCheckFailure,
    PoolShutdown,
    ProvisioningFailure,
    RequestTimeout,
    TeePoolError,
    UnsupportedCapability,
)
from teepool.models import (
    PoolPolicy,
    ProvisionedWorker,
    TEEDescriptor,
    Warmth,
    Worker,
    WorkerSpec,
    WorkerStatus,
)
from teepool.orchestrator import Orchestrator, RouteResult
from teepool.registry import NodePoolRegistry
from teepool.stats import PoolStats, StatsCollector

__all__ = [
    "__version__",
    "Orchestrator",
    "RouteResult",
    "NodePoolRegistry",
    "AdmissionQueue",
    "PendingRequest",
    "Autoscaler",
    "TickReport",
    "StatsCollector",
    "PoolStats",
    "PoolPolicy",
    "WorkerSpec",
    "Worker",
    "WorkerStatus",
    "Warmth",
    "TEEDescriptor",
    "ProvisionedWorker",
    "TeePoolError",
    "ProvisioningFailure",
    "HealthCheckFailure",
    "CapacityExceeded",
    "RequestTimeout",
    "PoolShutdown",
    "UnsupportedCapability",
]
