"""Request-scoped access to the orchestrator held on app.state."""

from fastapi import Request

from teepool.orchestrator import Orchestrator


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator
