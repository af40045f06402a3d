"""
Pool statistics endpoints.

GET /stats - JSON snapshot.
GET /metrics - Prometheus text exposition.
"""
from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from teepool.orchestrator import Orchestrator
from teepool.server.auth import get_api_key
from teepool.server.dependencies import get_orchestrator
from teepool.server.schemas import StatsResponse
from teepool.stats import prometheus_format


router = APIRouter(tags=["stats"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key),
) -> StatsResponse:
    return StatsResponse.from_stats(orchestrator.stats())


@router.get("/metrics", response_class=PlainTextResponse)
async def get_metrics(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> PlainTextResponse:
    """Prometheus scrape target. Does not require authentication."""
    return PlainTextResponse(
        prometheus_format(orchestrator.stats()),
        media_type="text/plain; version=0.0.4",
    )
