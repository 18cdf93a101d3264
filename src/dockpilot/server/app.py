"""FastAPI application setup and route registration."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dockpilot import __version__
from dockpilot.config import Settings, load_settings
from dockpilot.engine.base import Engine
from dockpilot.engine.docker_engine import DockerEngine
from dockpilot.errors import EngineError
from dockpilot.server.routes import router
from dockpilot.server.services import Services, configure_services
from dockpilot.server.ws_routes import ws_router

_log = logging.getLogger(__name__)


def build_engine(settings: Settings) -> DockerEngine:
    return DockerEngine(
        stacks_dir=settings.stacks_dir,
        docker_cli=settings.docker_cli,
        docker_host=settings.docker_host,
    )


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    """Build the app and the streaming components it serves."""
    resolved = settings or load_settings()
    services = Services.build(resolved, engine or build_engine(resolved))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan: startup/shutdown hooks."""
        _log.info("DockPilot streaming server starting (stacks dir %s)", resolved.stacks_dir)
        try:
            await services.engine.ping()
        except EngineError as exc:
            _log.warning("Docker engine not reachable at startup: %s", exc)
        yield
        _log.info("DockPilot streaming server shutting down")
        await services.operations.shutdown()
        await services.hub.shutdown()
        await services.bridge.shutdown()
        await services.engine.close()

    app = FastAPI(
        title="DockPilot",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services
    configure_services(services)
    app.include_router(router)
    app.include_router(ws_router)
    return app
