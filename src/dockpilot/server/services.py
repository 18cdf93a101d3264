"""Shared service objects bound to the route handlers.

``create_app`` builds one ``Services`` and hands it to ``configure_services``
before the app starts serving; handlers fetch it with ``get_services``.
"""

from __future__ import annotations

from dataclasses import dataclass

from dockpilot.config import Settings
from dockpilot.engine.base import Engine
from dockpilot.server.connections import ConnectionArena
from dockpilot.streaming.log_hub import LogStreamHub
from dockpilot.streaming.operations import OperationStreamController
from dockpilot.streaming.shell_bridge import ShellBridge


@dataclass
class Services:
    settings: Settings
    engine: Engine
    hub: LogStreamHub
    bridge: ShellBridge
    operations: OperationStreamController
    arena: ConnectionArena

    @classmethod
    def build(cls, settings: Settings, engine: Engine) -> Services:
        return cls(
            settings=settings,
            engine=engine,
            hub=LogStreamHub(
                engine,
                buffer_size=settings.log_buffer_size,
                backlog_size=settings.log_backlog_size,
            ),
            bridge=ShellBridge(engine, buffer_size=settings.shell_buffer_size),
            operations=OperationStreamController(
                engine,
                buffer_size=settings.operation_buffer_size,
                history_limit=settings.operation_history_limit,
                pull_progress_interval=settings.pull_progress_interval,
            ),
            arena=ConnectionArena(),
        )


# Set by ``configure_services`` before the app starts serving.
_services: Services | None = None


def configure_services(services: Services) -> None:
    global _services
    _services = services


def get_services() -> Services:
    if _services is None:
        raise RuntimeError("Services not configured; build the app with create_app()")
    return _services
