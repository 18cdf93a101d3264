"""Server entry point: ``dockpilot serve``."""

from __future__ import annotations

from dockpilot.config import Settings


def run_server(settings: Settings, host: str | None = None, port: int | None = None) -> None:
    """Start the FastAPI server with uvicorn."""
    import uvicorn

    from dockpilot.server.app import create_app

    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )
