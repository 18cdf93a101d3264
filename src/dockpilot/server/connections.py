"""Connection arena: every open WebSocket, keyed by a stable connection id.

Each connection owns the forwarder tasks that drain its subscriptions'
outboxes into the socket.  Disconnecting cancels and awaits all of them.
Sends are serialized per connection because several forwarders share one
socket.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from fastapi import WebSocket

from dockpilot.streaming.events import WireEvent

_log = logging.getLogger(__name__)


@dataclass(eq=False)
class Connection:
    connection_id: str
    channel: str
    websocket: WebSocket
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task[None]] = field(default_factory=set)
    opened_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    async def send_event(self, event: WireEvent) -> None:
        async with self.send_lock:
            await self.websocket.send_text(event.to_json())

    async def send_bytes(self, data: bytes) -> None:
        async with self.send_lock:
            await self.websocket.send_bytes(data)


class ConnectionArena:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, channel: str) -> Connection:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        conn = Connection(connection_id=uuid4().hex, channel=channel, websocket=websocket)
        async with self._lock:
            self._connections[conn.connection_id] = conn
        _log.info(
            "Client %s connected to %s channel (%d open)", conn.connection_id, channel, len(self)
        )
        return conn

    def spawn(
        self, conn: Connection, coro: Coroutine[Any, Any, None], *, name: str | None = None
    ) -> asyncio.Task[None]:
        """Run *coro* as a task owned by *conn*."""
        task = asyncio.create_task(coro, name=name)
        conn.tasks.add(task)
        task.add_done_callback(conn.tasks.discard)
        return task

    async def disconnect(self, conn: Connection) -> None:
        """Cancel the connection's tasks and forget it."""
        async with self._lock:
            self._connections.pop(conn.connection_id, None)
        tasks = list(conn.tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        _log.info("Client %s disconnected from %s channel", conn.connection_id, conn.channel)

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def __len__(self) -> int:
        return len(self._connections)

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "connectionId": c.connection_id,
                "channel": c.channel,
                "tasks": len(c.tasks),
                "openedAt": c.opened_at.isoformat(),
            }
            for c in self._connections.values()
        ]
