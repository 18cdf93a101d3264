"""Streaming components.

Public API:
    LogStreamHub: shared container log follows with per-subscriber outboxes
    ShellBridge: TTY exec sessions bridged to a duplex channel
    OperationStreamController: long operations as event streams

Internal:
    outbox: bounded queue with drop accounting
    events: outbound event models
    phases, pull_progress: heuristics and aggregation for operation output
"""

from __future__ import annotations

from dockpilot.streaming.log_hub import LogStreamHub
from dockpilot.streaming.operations import OperationKind, OperationStreamController
from dockpilot.streaming.shell_bridge import ShellBridge

__all__ = ["LogStreamHub", "OperationKind", "OperationStreamController", "ShellBridge"]
