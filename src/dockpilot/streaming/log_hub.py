"""Log Stream Hub: one upstream log follow per container, fanned out to subscribers.

The registry (container → ``ContainerTail``) is guarded by a single
``asyncio.Lock``.  Critical sections never await, and line fan-out runs
without awaiting either, so attach/detach and delivery are atomic with
respect to each other.  Engine calls (opening a follow, closing it) always
happen outside the lock.

Each subscription owns a bounded ``Outbox``.  A slow consumer loses its
oldest lines and receives one ``dropped`` marker in their place; control
events (``subscribed``, ``error``, ``stream_end``) are never dropped.

Dependencies: engine/base, streaming/outbox, streaming/events, errors
Wired in: server/app.py → create_app(), server/ws_routes.py → /ws/logs
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from dockpilot.engine.base import Engine, EngineLogLine, LogTail
from dockpilot.errors import EngineError
from dockpilot.streaming.events import (
    LinesDroppedEvent,
    LogEvent,
    LogLineEvent,
    StreamEndEvent,
    StreamErrorEvent,
    SubscribedEvent,
)
from dockpilot.streaming.outbox import Outbox

_log = logging.getLogger(__name__)


class TailState(StrEnum):
    OPENING = "opening"
    STREAMING = "streaming"
    FAILED = "failed"
    ENDED = "ended"
    CLOSED = "closed"


@dataclass(eq=False)
class LogSubscription:
    """One client's interest in one container's logs."""

    subscription_id: str
    client_connection_id: str
    container_id: str
    tail_count: int
    outbox: Outbox[LogEvent]
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(eq=False)
class ContainerTail:
    """Shared upstream follow for one container."""

    container_id: str
    backlog: deque[LogLineEvent]
    state: TailState = TailState.OPENING
    subscriptions: dict[str, LogSubscription] = field(default_factory=dict)
    upstream: LogTail | None = None
    task: asyncio.Task[None] | None = None
    next_sequence: int = 1
    last_line: LogLineEvent | None = None

    @property
    def ref_count(self) -> int:
        return len(self.subscriptions)


class LogStreamHub:
    def __init__(
        self,
        engine: Engine,
        *,
        buffer_size: int = 1000,
        backlog_size: int = 1000,
    ) -> None:
        self._engine = engine
        self._buffer_size = buffer_size
        self._backlog_size = backlog_size
        self._lock = asyncio.Lock()
        self._tails: dict[str, ContainerTail] = {}
        self._failed: set[ContainerTail] = set()
        self._subscriptions: dict[str, tuple[LogSubscription, ContainerTail]] = {}

    # -- queries ------------------------------------------------------------

    def tail_for(self, container_id: str) -> ContainerTail | None:
        """Return the live (opening or streaming) tail for *container_id*."""
        return self._tails.get(container_id)

    def find(self, client_connection_id: str, container_id: str) -> LogSubscription | None:
        for sub, _ in self._subscriptions.values():
            if (
                sub.client_connection_id == client_connection_id
                and sub.container_id == container_id
            ):
                return sub
        return None

    def subscriptions_for(self, client_connection_id: str) -> list[LogSubscription]:
        return [
            sub
            for sub, _ in self._subscriptions.values()
            if sub.client_connection_id == client_connection_id
        ]

    def snapshot(self) -> list[dict[str, Any]]:
        """Diagnostic view of every tail the hub still tracks."""
        tails = [*self._tails.values(), *self._failed]
        return [
            {
                "containerId": tail.container_id,
                "state": str(tail.state),
                "refCount": tail.ref_count,
                "nextSequence": tail.next_sequence,
                "subscriptions": sorted(tail.subscriptions),
            }
            for tail in tails
        ]

    # -- subscribe / unsubscribe -------------------------------------------------

    async def subscribe(
        self,
        client_connection_id: str,
        container_id: str,
        tail_count: int,
    ) -> LogSubscription:
        """Attach a new subscription, opening the upstream follow if needed.

        Raises ``EngineError`` when this call opened the follow and the engine
        refused it; subscribers that joined meanwhile receive an ``error``.
        """
        async with self._lock:
            sub = self._new_subscription(client_connection_id, container_id, tail_count)
            tail = self._tails.get(container_id)
            opener = tail is None
            if tail is None:
                tail = ContainerTail(
                    container_id=container_id, backlog=deque(maxlen=self._backlog_size)
                )
                self._tails[container_id] = tail
            self._attach(sub, tail, replay=not opener)

        if not opener:
            _log.debug("Subscription %s joined tail for %s", sub.subscription_id, container_id)
            return sub

        _log.info("Opening log follow for %s (tail=%d)", container_id, tail_count)
        try:
            upstream = await self._engine.tail_logs(container_id, tail=tail_count)
        except asyncio.CancelledError:
            await self._abort_open(tail, sub, None)
            raise
        except EngineError as exc:
            await self._abort_open(tail, sub, exc)
            raise

        async with self._lock:
            if tail.state is TailState.OPENING:
                tail.upstream = upstream
                tail.state = TailState.STREAMING
                tail.task = asyncio.create_task(
                    self._pump(tail, upstream), name=f"log-tail-{container_id}"
                )
                upstream = None
        if upstream is not None:
            # Everyone unsubscribed while the follow was opening.
            await upstream.aclose()
        return sub

    def _new_subscription(
        self, client_connection_id: str, container_id: str, tail_count: int
    ) -> LogSubscription:
        def _marker(count: int) -> LogEvent:
            return LinesDroppedEvent(container_id=container_id, count=count)

        return LogSubscription(
            subscription_id=uuid4().hex,
            client_connection_id=client_connection_id,
            container_id=container_id,
            tail_count=tail_count,
            outbox=Outbox(self._buffer_size, on_drop=_marker),
        )

    def _attach(self, sub: LogSubscription, tail: ContainerTail, *, replay: bool) -> None:
        tail.subscriptions[sub.subscription_id] = sub
        self._subscriptions[sub.subscription_id] = (sub, tail)
        sub.outbox.offer(
            SubscribedEvent(
                container_id=sub.container_id,
                subscription_id=sub.subscription_id,
                message=f"Subscribed to logs for container {sub.container_id}",
            ),
            droppable=False,
        )
        # Leave room for the ack so the replay never evicts itself.
        count = min(sub.tail_count, self._buffer_size - 1)
        if replay and count > 0:
            for line in list(tail.backlog)[-count:]:
                sub.outbox.offer(line)

    async def _abort_open(
        self, tail: ContainerTail, opener: LogSubscription, exc: EngineError | None
    ) -> None:
        async with self._lock:
            if self._tails.get(tail.container_id) is tail:
                del self._tails[tail.container_id]
            tail.state = TailState.CLOSED
            subs = list(tail.subscriptions.values())
            tail.subscriptions.clear()
            for sub in subs:
                self._subscriptions.pop(sub.subscription_id, None)
                if sub is opener or exc is None:
                    sub.outbox.close(drain=False)
                else:
                    sub.outbox.offer(
                        StreamErrorEvent(
                            message=f"Failed to subscribe: {exc}",
                            container_id=tail.container_id,
                        ),
                        droppable=False,
                    )
                    sub.outbox.close()
        if exc is not None:
            _log.warning("Log follow for %s could not be opened: %s", tail.container_id, exc)

    async def unsubscribe(self, subscription_id: str) -> bool:
        """Detach a subscription; the last one out stops the upstream follow."""
        async with self._lock:
            entry = self._subscriptions.pop(subscription_id, None)
            if entry is None:
                return False
            sub, tail = entry
            tail.subscriptions.pop(subscription_id, None)
            sub.outbox.close(drain=False)
            if tail.ref_count > 0:
                return True
            task, upstream = self._retire(tail)
        await self._release(tail.container_id, task, upstream)
        return True

    async def release_connection(self, client_connection_id: str) -> int:
        """Unsubscribe everything a disconnected client still holds."""
        subs = self.subscriptions_for(client_connection_id)
        for sub in subs:
            await self.unsubscribe(sub.subscription_id)
        return len(subs)

    def _retire(self, tail: ContainerTail) -> tuple[asyncio.Task[None] | None, LogTail | None]:
        """Drop *tail* from the registry. Caller holds the lock."""
        if self._tails.get(tail.container_id) is tail:
            del self._tails[tail.container_id]
        self._failed.discard(tail)
        tail.state = TailState.CLOSED
        task, upstream = tail.task, tail.upstream
        tail.task = None
        tail.upstream = None
        return task, upstream

    async def _release(
        self, container_id: str, task: asyncio.Task[None] | None, upstream: LogTail | None
    ) -> None:
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])
        if upstream is not None:
            try:
                await upstream.aclose()
            except EngineError as exc:
                _log.warning("Closing log follow for %s failed: %s", container_id, exc)
        _log.info("Log follow for %s closed", container_id)

    # -- upstream pump ------------------------------------------------------------

    def _fan_out(self, tail: ContainerTail, line: EngineLogLine) -> None:
        event = LogLineEvent(
            container_id=tail.container_id,
            data=line.text,
            stream=line.stream,
            sequence=tail.next_sequence,
        )
        tail.next_sequence += 1
        tail.backlog.append(event)
        tail.last_line = event
        for sub in tail.subscriptions.values():
            sub.outbox.offer(event)

    async def _pump(self, tail: ContainerTail, upstream: LogTail) -> None:
        try:
            async for line in upstream:
                self._fan_out(tail, line)
        except EngineError as exc:
            await self._fail(tail, f"Stream error: {exc}")
            return
        except Exception as exc:
            _log.exception("Log pump for %s crashed", tail.container_id)
            await self._fail(tail, f"Stream error: {exc}")
            return
        await self._end(tail)

    async def _end(self, tail: ContainerTail) -> None:
        async with self._lock:
            if tail.state is not TailState.STREAMING:
                return
            subs = list(tail.subscriptions.values())
            for sub in subs:
                self._subscriptions.pop(sub.subscription_id, None)
                sub.outbox.offer(StreamEndEvent(container_id=tail.container_id), droppable=False)
                sub.outbox.close()
            tail.subscriptions.clear()
            _, upstream = self._retire(tail)
            tail.state = TailState.ENDED
        _log.info("Log stream for %s ended (%d subscriber(s))", tail.container_id, len(subs))
        if upstream is not None:
            with contextlib.suppress(EngineError):
                await upstream.aclose()

    async def _fail(self, tail: ContainerTail, message: str) -> None:
        async with self._lock:
            if tail.state is not TailState.STREAMING:
                return
            tail.state = TailState.FAILED
            if self._tails.get(tail.container_id) is tail:
                del self._tails[tail.container_id]
            self._failed.add(tail)
            upstream, tail.upstream = tail.upstream, None
            tail.task = None
            for sub in tail.subscriptions.values():
                sub.outbox.offer(
                    StreamErrorEvent(message=message, container_id=tail.container_id),
                    droppable=False,
                )
                sub.outbox.close()
        _log.warning("Log stream for %s failed: %s", tail.container_id, message)
        if upstream is not None:
            with contextlib.suppress(EngineError):
                await upstream.aclose()

    async def shutdown(self) -> None:
        """Stop every follow and close every subscription."""
        async with self._lock:
            tails = [*self._tails.values(), *self._failed]
            released = []
            for tail in tails:
                for sub in tail.subscriptions.values():
                    self._subscriptions.pop(sub.subscription_id, None)
                    sub.outbox.close()
                tail.subscriptions.clear()
                released.append((tail.container_id, *self._retire(tail)))
        for container_id, task, upstream in released:
            await self._release(container_id, task, upstream)
