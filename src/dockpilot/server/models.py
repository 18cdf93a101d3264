"""Pydantic models for inbound WebSocket messages, control replies and REST bodies."""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from dockpilot import __version__
from dockpilot.errors import ProtocolError
from dockpilot.streaming.events import WireEvent

# --- Inbound WebSocket messages ---


class ClientModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscribePayload(ClientModel):
    container_id: str = Field(min_length=1)
    tail: int | None = Field(default=None, ge=0)


class SubscribeMessage(ClientModel):
    type: Literal["subscribe"]
    payload: SubscribePayload


class UnsubscribePayload(ClientModel):
    container_id: str = Field(min_length=1)


class UnsubscribeMessage(ClientModel):
    type: Literal["unsubscribe"]
    payload: UnsubscribePayload


class PingMessage(ClientModel):
    type: Literal["ping"]


class StartPayload(ClientModel):
    container_id: str = Field(min_length=1)
    cols: int = Field(default=80, ge=1, le=1000)
    rows: int = Field(default=24, ge=1, le=1000)


class StartMessage(ClientModel):
    type: Literal["start"]
    payload: StartPayload


class InputPayload(ClientModel):
    data: str


class InputMessage(ClientModel):
    type: Literal["input"]
    payload: InputPayload


class ResizePayload(ClientModel):
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class ResizeMessage(ClientModel):
    type: Literal["resize"]
    payload: ResizePayload


class CloseMessage(ClientModel):
    type: Literal["close"]


LogClientMessage = Annotated[
    SubscribeMessage | UnsubscribeMessage | PingMessage,
    Field(discriminator="type"),
]
ShellClientMessage = Annotated[
    StartMessage | InputMessage | ResizeMessage | CloseMessage | PingMessage,
    Field(discriminator="type"),
]

_LOG_MESSAGES: TypeAdapter[LogClientMessage] = TypeAdapter(LogClientMessage)
_SHELL_MESSAGES: TypeAdapter[ShellClientMessage] = TypeAdapter(ShellClientMessage)
_LOG_TYPES = frozenset({"subscribe", "unsubscribe", "ping"})
_SHELL_TYPES = frozenset({"start", "input", "resize", "close", "ping"})


def _describe(exc: ValidationError, message_type: str) -> str:
    for error in exc.errors():
        if "containerId" in error["loc"] or "container_id" in error["loc"]:
            return "Container ID is required"
    first = exc.errors()[0]
    loc = [str(part) for part in first["loc"]]
    # Discriminated unions prefix the location with the tag value.
    if loc and loc[0] == message_type:
        loc = loc[1:]
    where = ".".join(loc)
    return f"Invalid {message_type} message: {where}: {first['msg']}"


def _parse(raw: str, known: frozenset[str], adapter: TypeAdapter[Any]) -> Any:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProtocolError("Invalid message format") from exc
    if not isinstance(data, dict):
        raise ProtocolError("Invalid message format")
    message_type = data.get("type")
    if message_type not in known:
        raise ProtocolError(f"Unknown message type: {message_type}")
    try:
        return adapter.validate_python(data)
    except ValidationError as exc:
        raise ProtocolError(_describe(exc, str(message_type))) from exc


def parse_log_message(raw: str) -> SubscribeMessage | UnsubscribeMessage | PingMessage:
    """Decode one text frame from the log channel, raising ``ProtocolError``."""
    return _parse(raw, _LOG_TYPES, _LOG_MESSAGES)  # type: ignore[no-any-return]


def parse_shell_message(
    raw: str,
) -> StartMessage | InputMessage | ResizeMessage | CloseMessage | PingMessage:
    """Decode one text frame from the shell channel, raising ``ProtocolError``."""
    return _parse(raw, _SHELL_TYPES, _SHELL_MESSAGES)  # type: ignore[no-any-return]


# --- Outbound control messages ---


class ConnectedMessage(WireEvent):
    type: Literal["connected"] = "connected"
    client_id: str
    message: str


class InfoMessage(WireEvent):
    type: Literal["info"] = "info"
    message: str


class UnsubscribedMessage(WireEvent):
    type: Literal["unsubscribed"] = "unsubscribed"
    container_id: str


class PongMessage(WireEvent):
    type: Literal["pong"] = "pong"


class ErrorMessage(WireEvent):
    type: Literal["error"] = "error"
    message: str
    container_id: str | None = None


# --- REST models ---


class ImageSpec(ClientModel):
    repository: str = Field(min_length=1)
    current_tag: str = "latest"

    @property
    def ref(self) -> str:
        return f"{self.repository}:{self.current_tag}"


class BatchUpdateRequest(ClientModel):
    """POST /api/updates/execute/stream request body."""

    images: list[ImageSpec] = Field(default_factory=list)
    restart_containers: bool = False


class HealthResponse(BaseModel):
    """GET /api/health response."""

    status: str = "ok"
    version: str = __version__
    engine: str = "ok"
