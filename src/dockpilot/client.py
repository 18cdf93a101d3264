"""Reference Python client for the streaming endpoints.

``LogFollower`` keeps a set of desired container subscriptions alive over
``/ws/logs``: it re-subscribes after every reconnect and retries after a
fixed delay for as long as any subscription is still wanted.  Received lines
go into a bounded history.

``stream_operation`` consumes one SSE operation stream and stops at the
first terminal event.

Dependencies: errors
Wired in: (library use; not imported by the server)
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import httpx
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from dockpilot.errors import DockPilotError

_log = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY = 3.0
DEFAULT_HISTORY_LIMIT = 2000
OPERATION_TIMEOUT_SECONDS = 600.0
TERMINAL_EVENT_TYPES = frozenset({"done", "error", "complete"})


class ClientStateError(DockPilotError):
    """A follower method was called in a state that does not allow it."""


class FollowerState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    WAITING = "waiting"
    CLOSED = "closed"


_TRANSITIONS: dict[FollowerState, frozenset[FollowerState]] = {
    FollowerState.IDLE: frozenset({FollowerState.CONNECTING, FollowerState.CLOSED}),
    FollowerState.CONNECTING: frozenset(
        {FollowerState.OPEN, FollowerState.WAITING, FollowerState.IDLE, FollowerState.CLOSED}
    ),
    FollowerState.OPEN: frozenset({FollowerState.WAITING, FollowerState.IDLE, FollowerState.CLOSED}),
    FollowerState.WAITING: frozenset({FollowerState.CONNECTING, FollowerState.CLOSED}),
    FollowerState.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class ReceivedLine:
    container_id: str
    text: str
    stream: str
    sequence: int


class LogFollower:
    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        connector: Callable[..., Any] = connect,
    ) -> None:
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.state = FollowerState.IDLE
        self.history: deque[ReceivedLine] = deque(maxlen=history_limit)
        self.messages: deque[dict[str, Any]] = deque(maxlen=history_limit)
        self.dropped = 0
        self.connects = 0
        self._headers = {"X-API-Key": api_key} if api_key else {}
        self._connector = connector
        self._desired: dict[str, int] = {}
        self._ws: Any = None
        self._task: asyncio.Task[None] | None = None
        self._retries: dict[str, asyncio.Task[None]] = {}
        self._opened = asyncio.Event()

    @property
    def desired(self) -> dict[str, int]:
        return dict(self._desired)

    def _transition(self, new: FollowerState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise ClientStateError(f"Invalid follower transition {self.state} → {new}")
        self.state = new
        if new is FollowerState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()

    async def wait_open(self) -> None:
        await self._opened.wait()

    # -- subscriptions ------------------------------------------------------------

    async def _send(self, message: dict[str, Any]) -> None:
        if self.state is FollowerState.OPEN and self._ws is not None:
            await self._ws.send(json.dumps(message))

    async def subscribe(self, container_id: str, tail: int = 100) -> None:
        if self.state is FollowerState.CLOSED:
            raise ClientStateError("Follower is closed")
        self._desired[container_id] = tail
        await self._send({"type": "subscribe", "payload": {"containerId": container_id, "tail": tail}})
        if self.state is FollowerState.IDLE:
            self.start()

    async def unsubscribe(self, container_id: str) -> None:
        if self._desired.pop(container_id, None) is not None:
            await self._send({"type": "unsubscribe", "payload": {"containerId": container_id}})

    # -- connection loop ----------------------------------------------------------

    def start(self) -> asyncio.Task[None]:
        if self.state is not FollowerState.IDLE:
            raise ClientStateError(f"Cannot start follower in state {self.state}")
        self._task = asyncio.create_task(self._run(), name="log-follower")
        return self._task

    async def close(self) -> None:
        if self.state is FollowerState.CLOSED:
            return
        self._transition(FollowerState.CLOSED)
        for retry in self._retries.values():
            retry.cancel()
        if self._ws is not None:
            with contextlib.suppress(ConnectionClosed, OSError):
                await self._ws.close()
        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            await asyncio.wait([self._task])

    async def _run(self) -> None:
        while True:
            self._transition(FollowerState.CONNECTING)
            try:
                async with self._connector(self.url, additional_headers=self._headers) as ws:
                    self._ws = ws
                    self.connects += 1
                    self._transition(FollowerState.OPEN)
                    for container_id, tail in list(self._desired.items()):
                        await self._send(
                            {
                                "type": "subscribe",
                                "payload": {"containerId": container_id, "tail": tail},
                            }
                        )
                    async for raw in ws:
                        self._handle(raw)
            except (OSError, ConnectionClosed, InvalidHandshake, InvalidURI) as exc:
                _log.warning("Log channel %s lost: %s", self.url, exc)
            finally:
                self._ws = None

            if self.state is FollowerState.CLOSED:
                return
            if not self._desired:
                self._transition(FollowerState.IDLE)
                return
            self._transition(FollowerState.WAITING)
            _log.info("Reconnecting to %s in %.1fs", self.url, self.reconnect_delay)
            await asyncio.sleep(self.reconnect_delay)
            if self.state is FollowerState.CLOSED:
                return

    def _handle(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            _log.warning("Ignoring malformed frame from %s", self.url)
            return
        if not isinstance(message, dict):
            _log.warning("Ignoring non-object frame from %s", self.url)
            return
        self.messages.append(message)
        kind = message.get("type")
        container_id = message.get("containerId")
        if kind == "log":
            if not isinstance(container_id, str):
                _log.warning("Ignoring log frame without containerId from %s", self.url)
                return
            self.history.append(
                ReceivedLine(
                    container_id=container_id,
                    text=str(message.get("data", "")),
                    stream=str(message.get("stream", "stdout")),
                    sequence=int(message.get("sequence", 0)),
                )
            )
        elif kind == "dropped":
            self.dropped += int(message.get("count", 0))
        elif kind == "stream_end":
            self._desired.pop(str(container_id), None)
        elif kind == "error":
            _log.warning("Log channel error: %s", message.get("message"))
            if not isinstance(container_id, str) or container_id not in self._desired:
                return
            if str(message.get("message", "")).startswith("Failed to subscribe"):
                # Open failures are terminal.
                self._desired.pop(container_id)
            elif container_id not in self._retries:
                self._retries[container_id] = asyncio.create_task(
                    self._resubscribe(container_id), name=f"log-resubscribe-{container_id}"
                )

    async def _resubscribe(self, container_id: str) -> None:
        """Ask again for a container whose follow failed while the channel stayed up."""
        try:
            await asyncio.sleep(self.reconnect_delay)
            tail = self._desired.get(container_id)
            if tail is not None:
                _log.info("Re-subscribing to %s after stream error", container_id)
                await self._send(
                    {"type": "subscribe", "payload": {"containerId": container_id, "tail": tail}}
                )
        except (ConnectionClosed, OSError) as exc:
            _log.debug("Re-subscribe to %s skipped: %s", container_id, exc)
        finally:
            self._retries.pop(container_id, None)

    def lines_for(self, container_id: str) -> list[ReceivedLine]:
        return [line for line in self.history if line.container_id == container_id]


async def stream_operation(
    base_url: str,
    path: str,
    *,
    method: str = "GET",
    body: dict[str, Any] | None = None,
    api_key: str | None = None,
    timeout: float = OPERATION_TIMEOUT_SECONDS,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield the events of one SSE operation stream until a terminal event."""
    headers = {"X-API-Key": api_key} if api_key else {}
    async with (
        httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport) as client,
        client.stream(method, path, json=body, headers=headers) as response,
    ):
        response.raise_for_status()
        async for line in response.aiter_lines():
            if not line.startswith("data:"):
                continue
            event: dict[str, Any] = json.loads(line[len("data:") :].strip())
            yield event
            if event.get("type") in TERMINAL_EVENT_TYPES:
                return
