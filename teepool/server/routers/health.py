"""
Health check endpoint.

Provides basic health status for load balancers and monitoring.
"""
from fastapi import APIRouter, Depends

from teepool import __version__
from teepool.orchestrator import Orchestrator
from teepool.server.dependencies import get_orchestrator
from teepool.server.schemas import HealthResponse


router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> HealthResponse:
    """
    Health check endpoint.

    Does not require authentication.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        backend=orchestrator.backend.name,
    )
