"""
Route endpoint.

POST /route - Assign a warm worker, waiting for a cold start if needed.
"""
from fastapi import APIRouter, Depends, Request

from teepool.exceptions import TeePoolError
from teepool.orchestrator import Orchestrator
from teepool.server.auth import get_api_key
from teepool.server.dependencies import get_orchestrator
from teepool.server.exceptions import from_pool_error
from teepool.server.schemas import RouteRequest, RouteResponse


router = APIRouter(tags=["route"])


@router.post("/route", response_model=RouteResponse)
async def route(
    request_body: RouteRequest,
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key),
) -> RouteResponse:
    """
    Get the endpoint of a worker for one workload.

    Returns immediately when a warm worker exists; otherwise waits up to the
    cold start timeout for a new worker.

    Errors:
    - 400: no worker the pool can create serves the capability
    - 429: pool at max size and queue full
    - 503: provisioning failed or orchestrator shutting down
    - 504: no worker became available in time
    """
    try:
        result = await orchestrator.route(request_body.capability)
    except TeePoolError as e:
        raise from_pool_error(
            e,
            request_id=getattr(request.state, "request_id", None),
            default_retry_after=orchestrator.policy.cold_start_timeout_ms / 1000.0,
        ) from e
    return RouteResponse.from_result(result)
