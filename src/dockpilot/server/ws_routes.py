"""Duplex WebSocket channels for container logs and interactive shells.

Control messages travel as text frames holding JSON.  On the shell channel
raw terminal bytes travel as binary frames in both directions; the frame
type alone decides how a frame is handled.
"""

from __future__ import annotations

import contextlib
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from dockpilot.errors import EngineError, ProtocolError, ShellStateError
from dockpilot.server.auth import verify_ws_api_key
from dockpilot.server.connections import Connection
from dockpilot.server.models import (
    CloseMessage,
    ConnectedMessage,
    ErrorMessage,
    InfoMessage,
    InputMessage,
    PingMessage,
    PongMessage,
    ResizeMessage,
    StartMessage,
    SubscribeMessage,
    SubscribePayload,
    UnsubscribedMessage,
    UnsubscribeMessage,
    parse_log_message,
    parse_shell_message,
)
from dockpilot.server.services import get_services
from dockpilot.streaming.log_hub import LogSubscription
from dockpilot.streaming.shell_bridge import ShellSession

_log = logging.getLogger(__name__)

ws_router = APIRouter()


async def _receive_frame(websocket: WebSocket) -> str | bytes:
    """Return the next text or binary frame; raise on disconnect."""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    text = message.get("text")
    if text is not None:
        return str(text)
    return bytes(message.get("bytes") or b"")


async def _send_error(conn: Connection, message: str, container_id: str | None = None) -> None:
    await conn.send_event(ErrorMessage(message=message, container_id=container_id))


# --- Logs ---


async def _forward_logs(conn: Connection, sub: LogSubscription) -> None:
    try:
        async for event in sub.outbox:
            await conn.send_event(event)
    except (WebSocketDisconnect, RuntimeError) as exc:
        _log.debug("Log forwarder for %s stopped: %s", sub.subscription_id, exc)


async def _subscribe(conn: Connection, payload: SubscribePayload) -> None:
    services = get_services()
    container_id = payload.container_id
    existing = services.hub.find(conn.connection_id, container_id)
    if existing is not None:
        if not existing.outbox.closed:
            await conn.send_event(InfoMessage(message=f"Already subscribed to {container_id}"))
            return
        # The old follow ended or failed; drop it and open a fresh one.
        await services.hub.unsubscribe(existing.subscription_id)
    tail = payload.tail if payload.tail is not None else services.settings.default_tail
    try:
        sub = await services.hub.subscribe(conn.connection_id, container_id, tail)
    except EngineError as exc:
        await _send_error(conn, f"Failed to subscribe: {exc}", container_id)
        return
    services.arena.spawn(conn, _forward_logs(conn, sub), name=f"logs-{sub.subscription_id}")


async def _unsubscribe(conn: Connection, container_id: str) -> None:
    services = get_services()
    sub = services.hub.find(conn.connection_id, container_id)
    if sub is None:
        await conn.send_event(InfoMessage(message=f"Not subscribed to {container_id}"))
        return
    await services.hub.unsubscribe(sub.subscription_id)
    await conn.send_event(UnsubscribedMessage(container_id=container_id))


@ws_router.websocket("/ws/logs")
async def logs_socket(websocket: WebSocket) -> None:
    """Multiplexed container log subscriptions."""
    if not await verify_ws_api_key(websocket):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    services = get_services()
    conn = await services.arena.connect(websocket, "logs")
    try:
        await conn.send_event(
            ConnectedMessage(client_id=conn.connection_id, message="Connected to log stream")
        )
        while True:
            frame = await _receive_frame(websocket)
            if isinstance(frame, bytes):
                await _send_error(conn, "Binary frames are not supported on the log channel")
                continue
            try:
                msg = parse_log_message(frame)
            except ProtocolError as exc:
                await _send_error(conn, str(exc))
                continue

            if isinstance(msg, SubscribeMessage):
                await _subscribe(conn, msg.payload)
            elif isinstance(msg, UnsubscribeMessage):
                await _unsubscribe(conn, msg.payload.container_id)
            else:
                await conn.send_event(PongMessage())
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        _log.exception("Log channel error for client %s", conn.connection_id)
        with contextlib.suppress(Exception):
            await _send_error(conn, str(exc))
    finally:
        released = await services.hub.release_connection(conn.connection_id)
        if released:
            _log.info("Released %d subscription(s) of client %s", released, conn.connection_id)
        await services.arena.disconnect(conn)


# --- Shell ---


async def _forward_shell(conn: Connection, session: ShellSession) -> None:
    try:
        async for item in session.outbox:
            if isinstance(item, bytes):
                await conn.send_bytes(item)
            else:
                await conn.send_event(item)
    except (WebSocketDisconnect, RuntimeError) as exc:
        _log.debug("Shell forwarder for %s stopped: %s", session.session_id, exc)


def _active_session(conn: Connection) -> ShellSession:
    session = get_services().bridge.session_for(conn.connection_id)
    if session is None:
        raise ShellStateError("No active shell session")
    return session


async def _handle_shell_message(
    conn: Connection,
    msg: StartMessage | InputMessage | ResizeMessage | CloseMessage | PingMessage,
) -> None:
    bridge = get_services().bridge
    if isinstance(msg, StartMessage):
        payload = msg.payload
        session = await bridge.start(
            conn.connection_id, payload.container_id, payload.cols, payload.rows
        )
        get_services().arena.spawn(
            conn, _forward_shell(conn, session), name=f"shell-{session.session_id}"
        )
    elif isinstance(msg, InputMessage):
        await bridge.input(_active_session(conn).session_id, msg.payload.data.encode("utf-8"))
    elif isinstance(msg, ResizeMessage):
        await bridge.resize(_active_session(conn).session_id, msg.payload.cols, msg.payload.rows)
    elif isinstance(msg, CloseMessage):
        await bridge.close(_active_session(conn).session_id)
    else:
        await conn.send_event(PongMessage())


@ws_router.websocket("/ws/shell")
async def shell_socket(websocket: WebSocket) -> None:
    """Interactive shell inside a container."""
    if not await verify_ws_api_key(websocket):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    services = get_services()
    conn = await services.arena.connect(websocket, "shell")
    try:
        await conn.send_event(
            ConnectedMessage(client_id=conn.connection_id, message="Connected to shell channel")
        )
        while True:
            frame = await _receive_frame(websocket)
            try:
                if isinstance(frame, bytes):
                    await services.bridge.input(_active_session(conn).session_id, frame)
                else:
                    await _handle_shell_message(conn, parse_shell_message(frame))
            except (ProtocolError, ShellStateError, EngineError) as exc:
                await _send_error(conn, str(exc))
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        _log.exception("Shell channel error for client %s", conn.connection_id)
        with contextlib.suppress(Exception):
            await _send_error(conn, str(exc))
    finally:
        await services.bridge.release_connection(conn.connection_id)
        await services.arena.disconnect(conn)
