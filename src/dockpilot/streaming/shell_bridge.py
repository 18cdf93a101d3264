"""Shell Session Bridge: one TTY exec per client connection.

Sessions move through an explicit state machine::

    INIT → ATTACHING → ATTACHED → CLOSING → CLOSED
                  ↘        ↘         ↘
                   FAILED   FAILED    FAILED

``CLOSED`` and ``FAILED`` are terminal.  Terminal output is queued as raw
``bytes`` in the session outbox; control events are ``WireEvent`` models.
The reader waits for outbox space rather than dropping terminal output.

Dependencies: engine/base, streaming/outbox, streaming/events, errors
Wired in: server/app.py → create_app(), server/ws_routes.py → /ws/shell
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from dockpilot.engine.base import Engine, ExecChannel
from dockpilot.errors import EngineError, ShellStateError
from dockpilot.streaming.events import (
    ShellErrorEvent,
    ShellEvent,
    ShellExitEvent,
    ShellStartedEvent,
)
from dockpilot.streaming.outbox import Outbox

_log = logging.getLogger(__name__)


class ShellState(StrEnum):
    INIT = "init"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_TRANSITIONS: dict[ShellState, frozenset[ShellState]] = {
    ShellState.INIT: frozenset({ShellState.ATTACHING}),
    ShellState.ATTACHING: frozenset({ShellState.ATTACHED, ShellState.CLOSING, ShellState.FAILED}),
    ShellState.ATTACHED: frozenset({ShellState.CLOSING, ShellState.FAILED}),
    ShellState.CLOSING: frozenset({ShellState.CLOSED, ShellState.FAILED}),
    ShellState.CLOSED: frozenset(),
    ShellState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset({ShellState.CLOSED, ShellState.FAILED})


@dataclass(eq=False)
class ShellSession:
    session_id: str
    client_connection_id: str
    container_id: str
    cols: int
    rows: int
    outbox: Outbox[ShellEvent]
    state: ShellState = ShellState.INIT
    shell: str | None = None
    exit_code: int | None = None
    channel: ExecChannel | None = None
    reader: asyncio.Task[None] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, new: ShellState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise ShellStateError(f"Invalid shell transition {self.state} → {new}")
        _log.debug("Shell %s: %s → %s", self.session_id, self.state, new)
        self.state = new


class ShellBridge:
    def __init__(self, engine: Engine, *, buffer_size: int = 256) -> None:
        self._engine = engine
        self._buffer_size = buffer_size
        self._lock = asyncio.Lock()
        self._sessions: dict[str, ShellSession] = {}
        self._by_connection: dict[str, str] = {}

    def get(self, session_id: str) -> ShellSession:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise ShellStateError(f"Unknown shell session: {session_id}") from None

    def session_for(self, client_connection_id: str) -> ShellSession | None:
        session_id = self._by_connection.get(client_connection_id)
        return self._sessions.get(session_id) if session_id else None

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {
                "sessionId": s.session_id,
                "containerId": s.container_id,
                "state": str(s.state),
                "cols": s.cols,
                "rows": s.rows,
                "shell": s.shell,
            }
            for s in self._sessions.values()
        ]

    # -- lifecycle ------------------------------------------------------------

    async def start(
        self,
        client_connection_id: str,
        container_id: str,
        cols: int,
        rows: int,
    ) -> ShellSession:
        """Open a shell for the connection.

        Engine failures do not raise: the session ends up ``FAILED`` with an
        ``error`` event queued.  A second start while the connection's session
        is still live raises ``ShellStateError``.
        """
        async with self._lock:
            current = self.session_for(client_connection_id)
            if current is not None and not current.terminal:
                raise ShellStateError("A shell session is already active on this connection")
            if current is not None:
                del self._sessions[current.session_id]
            session = ShellSession(
                session_id=uuid4().hex,
                client_connection_id=client_connection_id,
                container_id=container_id,
                cols=cols,
                rows=rows,
                outbox=Outbox(self._buffer_size),
            )
            self._sessions[session.session_id] = session
            self._by_connection[client_connection_id] = session.session_id
            session.transition(ShellState.ATTACHING)

        try:
            channel = await self._engine.exec_shell(container_id, cols=cols, rows=rows)
        except EngineError as exc:
            if session.state is ShellState.ATTACHING:
                session.transition(ShellState.FAILED)
                session.outbox.offer(ShellErrorEvent(message=str(exc)), droppable=False)
                session.outbox.close()
            _log.warning("Shell for %s failed to start: %s", container_id, exc)
            return session

        if session.state is not ShellState.ATTACHING:
            await channel.close()
            return session

        session.channel = channel
        session.shell = channel.shell
        session.transition(ShellState.ATTACHED)
        session.outbox.offer(
            ShellStartedEvent(
                container_id=container_id,
                shell=channel.shell,
                message=f"Shell session started ({channel.shell})",
            ),
            droppable=False,
        )
        session.reader = asyncio.create_task(
            self._read_loop(session, channel), name=f"shell-{session.session_id}"
        )
        _log.info(
            "Shell %s attached to %s using %s", session.session_id, container_id, channel.shell
        )
        return session

    async def input(self, session_id: str, data: bytes) -> None:
        session = self.get(session_id)
        if session.state is not ShellState.ATTACHED or session.channel is None:
            raise ShellStateError("Shell session is not attached")
        await session.channel.write(data)

    async def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self.get(session_id)
        if session.state is not ShellState.ATTACHED or session.channel is None:
            raise ShellStateError("Shell session is not attached")
        await session.channel.resize(cols, rows)
        session.cols = cols
        session.rows = rows

    async def close(self, session_id: str) -> None:
        """Terminate the exec and emit ``exit``. No-op for terminal sessions."""
        session = self.get(session_id)
        if session.terminal:
            return
        if session.state is ShellState.CLOSING:
            if session.reader is not None:
                await asyncio.wait([session.reader])
            return

        session.transition(ShellState.CLOSING)
        reader, session.reader = session.reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.wait([reader])

        if session.channel is not None:
            try:
                session.exit_code = await session.channel.close()
            except EngineError as exc:
                _log.warning("Closing shell %s failed: %s", session_id, exc)
        session.transition(ShellState.CLOSED)
        session.outbox.offer(ShellExitEvent(exit_code=session.exit_code), droppable=False)
        session.outbox.close()
        _log.info("Shell %s closed", session_id)

    async def _read_loop(self, session: ShellSession, channel: ExecChannel) -> None:
        try:
            while True:
                chunk = await channel.read()
                if not chunk:
                    break
                if not await session.outbox.put(chunk):
                    return
        except EngineError as exc:
            await self._fail(session, channel, str(exc))
            return
        except Exception as exc:
            _log.exception("Shell reader %s crashed", session.session_id)
            await self._fail(session, channel, f"Shell error: {exc}")
            return

        if session.state is not ShellState.ATTACHED:
            return
        session.transition(ShellState.CLOSING)
        try:
            session.exit_code = await channel.close()
        except EngineError as exc:
            _log.warning("Closing shell %s failed: %s", session.session_id, exc)
        session.transition(ShellState.CLOSED)
        session.outbox.offer(ShellExitEvent(exit_code=session.exit_code), droppable=False)
        session.outbox.close()
        _log.info("Shell %s exited with code %s", session.session_id, session.exit_code)

    async def _fail(self, session: ShellSession, channel: ExecChannel, message: str) -> None:
        if session.state is not ShellState.ATTACHED:
            return
        session.transition(ShellState.FAILED)
        session.outbox.offer(ShellErrorEvent(message=message), droppable=False)
        session.outbox.close()
        try:
            await channel.close()
        except EngineError as exc:
            _log.warning("Closing failed shell %s failed: %s", session.session_id, exc)

    async def release_connection(self, client_connection_id: str) -> None:
        session = self.session_for(client_connection_id)
        if session is None:
            return
        await self.close(session.session_id)
        async with self._lock:
            self._sessions.pop(session.session_id, None)
            if self._by_connection.get(client_connection_id) == session.session_id:
                del self._by_connection[client_connection_id]

    async def shutdown(self) -> None:
        for connection_id in list(self._by_connection):
            await self.release_connection(connection_id)
