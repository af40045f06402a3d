"""
FastAPI application factory.

Usage:
    from teepool.server.app import create_app

    app = create_app()

Or run directly:
    uvicorn teepool.server:app
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from teepool import __version__
from teepool.config import get_settings
from teepool.orchestrator import Orchestrator
from teepool.server.exceptions import APIError
from teepool.server.middleware import RequestTrackingMiddleware
from teepool.server.routers import health, nodes, route, stats
from teepool.server.schemas import ErrorDetail, ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build (unless injected), start and stop the orchestrator."""
    orchestrator: Optional[Orchestrator] = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = Orchestrator.from_settings(get_settings())
        app.state.orchestrator = orchestrator

    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.stop()


def create_app(orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator. When omitted, one is built from
            environment settings at startup.

    Returns:
        Configured FastAPI application instance.
    """
    # Settings loaded for validation; the orchestrator is built at startup.
    get_settings()

    app = FastAPI(
        title="teepool",
        description="On-demand autoscaling pool of TEE workers",
        version=__version__,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(RequestTrackingMiddleware)

    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
        """Handle custom API errors."""
        request_id = getattr(request.state, "request_id", "unknown")
        headers = {"X-Request-ID": request_id}
        headers.update(exc.headers())
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(
                error=ErrorDetail(
                    code=exc.code,
                    message=exc.message,
                    request_id=exc.request_id or request_id,
                    retry_after=exc.retry_after,
                )
            ).model_dump(),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected errors."""
        request_id = getattr(request.state, "request_id", "unknown")
        logger.exception("Unhandled error [%s]", request_id)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="internal_error",
                    message="An internal error occurred",
                    request_id=request_id,
                )
            ).model_dump(),
            headers={"X-Request-ID": request_id},
        )

    app.include_router(health.router)
    app.include_router(route.router)
    app.include_router(nodes.router)
    app.include_router(stats.router)

    return app


# Default app instance for uvicorn
app = create_app()
