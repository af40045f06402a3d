"""
Node endpoints.

GET /nodes - List every tracked worker.
GET /nodes/{id} - One worker.
DELETE /nodes/{id} - Drain and destroy one worker.
POST /nodes/{id}/errors - Report a failed request on a worker.
"""
from fastapi import APIRouter, Depends

from teepool.orchestrator import Orchestrator
from teepool.server.auth import get_api_key
from teepool.server.dependencies import get_orchestrator
from teepool.server.exceptions import NodeNotFoundError
from teepool.server.schemas import NodeActionResponse, NodeInfo, NodeListResponse


router = APIRouter(prefix="/nodes", tags=["nodes"])


@router.get("", response_model=NodeListResponse)
async def list_nodes(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key),
) -> NodeListResponse:
    return NodeListResponse(
        nodes=[NodeInfo.from_worker(w) for w in orchestrator.nodes()]
    )


@router.get("/{node_id}", response_model=NodeInfo)
async def get_node(
    node_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key),
) -> NodeInfo:
    worker = orchestrator.node(node_id)
    if worker is None:
        raise NodeNotFoundError(f"No node {node_id}")
    return NodeInfo.from_worker(worker)


@router.delete("/{node_id}", response_model=NodeActionResponse, status_code=202)
async def stop_node(
    node_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key),
) -> NodeActionResponse:
    """
    Drain a warm or hot worker. Teardown happens in the background.
    """
    if not orchestrator.stop_worker(node_id):
        raise NodeNotFoundError(f"No running node {node_id}")
    return NodeActionResponse(id=node_id)


@router.post("/{node_id}/errors", response_model=NodeActionResponse)
async def report_error(
    node_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    api_key: str = Depends(get_api_key),
) -> NodeActionResponse:
    if not orchestrator.report_error(node_id):
        raise NodeNotFoundError(f"No running node {node_id}")
    return NodeActionResponse(id=node_id)
