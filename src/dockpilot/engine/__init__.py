"""Container engine adapter.

Public API:
    Engine, LogTail, ExecChannel, OperationProcess: interface types
    EngineLogLine, ContainerRef, PruneResult: value types
    DockerEngine: Docker implementation

Internal:
    compose: stack discovery and failure summaries
    process: subprocess line reader
"""

from __future__ import annotations

from dockpilot.engine.base import (
    ContainerRef,
    Engine,
    EngineLogLine,
    ExecChannel,
    LogTail,
    OperationProcess,
    PruneResult,
)
from dockpilot.engine.docker_engine import DockerEngine

__all__ = [
    "ContainerRef",
    "DockerEngine",
    "Engine",
    "EngineLogLine",
    "ExecChannel",
    "LogTail",
    "OperationProcess",
    "PruneResult",
]
