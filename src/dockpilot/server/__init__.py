"""WebSocket and SSE transport for the streaming components.

Public API:
    create_app: FastAPI application factory
    run_server: uvicorn entry point

Internal:
    routes, ws_routes, sse: endpoint handlers
    connections: connection arena
    models: wire models for client messages
    services, auth: shared state and API key checks
"""

from __future__ import annotations

from dockpilot.server.app import create_app
from dockpilot.server.cli import run_server

__all__ = ["create_app", "run_server"]
