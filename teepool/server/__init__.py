"""
teepool HTTP API server.

Usage:
    # Start server
    uvicorn teepool.server:app

    # Or through the CLI
    teepool serve

    # Or programmatically, with an orchestrator you built yourself
    from teepool.server import create_app

    app = create_app(orchestrator)
"""

from teepool.server.app import app, create_app

__all__ = ["app", "create_app"]
