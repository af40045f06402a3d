"""
Pydantic models for API request/response schemas.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from teepool.models import Worker
from teepool.orchestrator import RouteResult
from teepool.stats import PoolStats


# =============================================================================
# Route Endpoint Schemas
# =============================================================================


class RouteRequest(BaseModel):
    """Request body for POST /route."""

    capability: Optional[str] = Field(
        None, description="Required worker capability; any worker if omitted"
    )


class RouteResponse(BaseModel):
    """Response body for POST /route."""

    endpoint: str = Field(..., description="Base URL of the assigned worker")
    worker_id: str = Field(..., description="Assigned worker id")
    used_fallback: bool = Field(False, description="Served by a simulated TEE")
    queued: bool = Field(False, description="Request waited for a cold start")
    waited_ms: float = Field(0.0, description="Time spent before assignment")

    @classmethod
    def from_result(cls, result: RouteResult) -> "RouteResponse":
        return cls(
            endpoint=result.endpoint,
            worker_id=result.worker_id,
            used_fallback=result.used_fallback,
            queued=result.queued,
            waited_ms=round(result.waited_ms, 1),
        )


# =============================================================================
# Node Endpoint Schemas
# =============================================================================


class NodeInfo(BaseModel):
    """One worker as reported by GET /nodes."""

    id: str
    status: str
    warmth: str
    endpoint: str
    image: str
    capabilities: List[str] = Field(default_factory=list)
    requests_served: int = 0
    error_count: int = 0
    cold_start_duration_ms: Optional[float] = None
    provider_type: str = "unknown"
    hardware_type: str = "unknown"
    attestation_id: Optional[str] = None

    @classmethod
    def from_worker(cls, worker: Worker) -> "NodeInfo":
        return cls(
            id=worker.id,
            status=worker.status.value,
            warmth=worker.warmth.value,
            endpoint=worker.endpoint,
            image=worker.spec.image,
            capabilities=sorted(worker.spec.capabilities),
            requests_served=worker.requests_served,
            error_count=worker.error_count,
            cold_start_duration_ms=worker.cold_start_duration_ms,
            provider_type=worker.tee.provider_type,
            hardware_type=worker.tee.hardware_type,
            attestation_id=worker.tee.attestation_id,
        )


class NodeListResponse(BaseModel):
    """Response body for GET /nodes."""

    nodes: List[NodeInfo]


class NodeActionResponse(BaseModel):
    """Response body for DELETE /nodes/{id} and POST /nodes/{id}/errors."""

    id: str
    accepted: bool = True


# =============================================================================
# Stats Endpoint Schemas
# =============================================================================


class StatsResponse(BaseModel):
    """Response body for GET /stats."""

    total_requests: int
    queued_requests: int
    average_cold_start_ms: float
    nodes_warm: int
    nodes_cold: int
    nodes_starting: int
    total_nodes: int
    by_status: Dict[str, int]
    timestamp: float

    @classmethod
    def from_stats(cls, stats: PoolStats) -> "StatsResponse":
        return cls(
            total_requests=stats.total_requests,
            queued_requests=stats.queued_requests,
            average_cold_start_ms=round(stats.average_cold_start_ms, 1),
            nodes_warm=stats.nodes_warm,
            nodes_cold=stats.nodes_cold,
            nodes_starting=stats.nodes_starting,
            total_nodes=stats.total_nodes,
            by_status=stats.by_status,
            timestamp=stats.timestamp,
        )


# =============================================================================
# Health Endpoint Schemas
# =============================================================================


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str = Field(..., description="Health status")
    version: str = Field(..., description="API version")
    backend: str = Field(..., description="Provisioning backend in use")


# =============================================================================
# Error Schemas
# =============================================================================


class ErrorDetail(BaseModel):
    """Error detail."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    request_id: Optional[str] = Field(None, description="Request ID for tracking")
    retry_after: Optional[float] = Field(None, description="Seconds to wait before retrying")


class ErrorResponse(BaseModel):
    """Error response body."""

    error: ErrorDetail
