"""Outbound event models for log, shell and operation streams.

All events serialize with camelCase keys and omit unset optional fields, so
``LogLineEvent(container_id="c1", ...)`` goes out as
``{"type": "log", "containerId": "c1", ...}``.  Raw terminal output is not an
event model: it travels as ``bytes`` and the transport sends it as a binary
frame.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireEvent(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


# --- Log stream events ---


class SubscribedEvent(WireEvent):
    type: Literal["subscribed"] = "subscribed"
    container_id: str
    subscription_id: str
    message: str = ""


class LogLineEvent(WireEvent):
    """One container log line, numbered per container."""

    type: Literal["log"] = "log"
    container_id: str
    data: str
    stream: Literal["stdout", "stderr"] = "stdout"
    sequence: int


class LinesDroppedEvent(WireEvent):
    """Marker for lines discarded because the subscriber fell behind."""

    type: Literal["dropped"] = "dropped"
    container_id: str
    count: int


class StreamErrorEvent(WireEvent):
    type: Literal["error"] = "error"
    message: str
    container_id: str | None = None


class StreamEndEvent(WireEvent):
    type: Literal["stream_end"] = "stream_end"
    container_id: str


LogEvent = SubscribedEvent | LogLineEvent | LinesDroppedEvent | StreamErrorEvent | StreamEndEvent


# --- Shell events ---


class ShellStartedEvent(WireEvent):
    type: Literal["started"] = "started"
    container_id: str
    shell: str
    message: str = ""


class ShellExitEvent(WireEvent):
    type: Literal["exit"] = "exit"
    exit_code: int | None = None
    message: str = "Shell session ended"


class ShellErrorEvent(WireEvent):
    type: Literal["error"] = "error"
    message: str


ShellEvent = ShellStartedEvent | ShellExitEvent | ShellErrorEvent | bytes


# --- Operation events ---


class OutputEvent(WireEvent):
    type: Literal["stdout", "stderr"]
    data: str


class PhaseEvent(WireEvent):
    """Best-effort deploy phase guessed from output text."""

    type: Literal["phase"] = "phase"
    data: str


class DoneEvent(WireEvent):
    type: Literal["done"] = "done"
    data: str


class ErrorEvent(WireEvent):
    type: Literal["error"] = "error"
    data: str


class BatchStartedEvent(WireEvent):
    type: Literal["start"] = "start"
    total: int
    message: str


class ItemProgressEvent(WireEvent):
    type: Literal["progress"] = "progress"
    current: int
    total: int
    image: str
    status: Literal["pulling", "completed", "failed"]
    message: str


class LayerCounts(WireEvent):
    completed: int
    total: int


class ByteCounts(WireEvent):
    downloaded: str
    total: str


class PullProgressEvent(WireEvent):
    """Aggregated pull progress, or a pull notice when ``status`` is not ``downloading``."""

    type: Literal["pull-progress"] = "pull-progress"
    status: str
    current: int | None = None
    total: int | None = None
    image: str | None = None
    layers: LayerCounts | None = None
    byte_counts: ByteCounts | None = Field(default=None, alias="bytes")
    percent: int | None = None
    message: str | None = None
    digest: str | None = None


class BatchCompleteEvent(WireEvent):
    type: Literal["complete"] = "complete"
    total: int
    successful: int
    failed: int
    results: list[dict[str, Any]] = Field(default_factory=list)


OperationEvent = (
    OutputEvent
    | PhaseEvent
    | DoneEvent
    | ErrorEvent
    | BatchStartedEvent
    | ItemProgressEvent
    | PullProgressEvent
    | BatchCompleteEvent
)

TERMINAL_OPERATION_EVENTS: tuple[type[WireEvent], ...] = (DoneEvent, ErrorEvent, BatchCompleteEvent)
