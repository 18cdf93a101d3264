"""Aggregation of structured image pull events into progress snapshots.

The per-layer records are authoritative; ``layers``, ``bytes`` and
``percent`` in emitted events are derived from them on every snapshot.
Snapshots are throttled to one per ``interval`` seconds, with a final one
when the pull finishes.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from dockpilot.streaming.events import ByteCounts, LayerCounts, PullProgressEvent


class LayerStatus(StrEnum):
    WAITING = "waiting"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    COMPLETE = "complete"


@dataclass
class LayerProgress:
    layer_id: str
    status: LayerStatus = LayerStatus.WAITING
    bytes_done: int = 0
    bytes_total: int = 0


_WAITING_STATUSES = frozenset({"pulling fs layer", "waiting"})
_COMPLETE_STATUSES = frozenset({"download complete", "pull complete", "already exists"})
# Statuses that only appear when layers are actually transferred.
_UPDATE_STATUSES = frozenset({"downloading", "download complete", "pull complete"})


def format_bytes(num: float) -> str:
    if num < 1024:
        return f"{int(num)} B"
    if num < 1024**2:
        return f"{num / 1024:.1f} KB"
    if num < 1024**3:
        return f"{num / 1024**2:.1f} MB"
    return f"{num / 1024**3:.2f} GB"


def describe_pull_event(event: dict[str, Any]) -> str:
    """Render one pull event the way ``docker pull`` prints it."""
    parts = [str(event.get("status", "")).strip()]
    progress = event.get("progress")
    if progress:
        parts.append(str(progress))
    text = " ".join(p for p in parts if p)
    layer = event.get("id")
    return f"{layer}: {text}" if layer else text


class PullProgressTracker:
    def __init__(
        self,
        image: str,
        *,
        current: int | None = None,
        total: int | None = None,
        interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.image = image
        self.current = current
        self.total = total
        self.interval = interval
        self._clock = clock
        self._last_emit: float | None = None
        self.layers: dict[str, LayerProgress] = {}
        self.updated = False
        self.digest: str | None = None

    def _event(self, status: str, **fields: Any) -> PullProgressEvent:
        return PullProgressEvent(
            status=status,
            current=self.current,
            total=self.total,
            image=self.image,
            **fields,
        )

    def _layer(self, layer_id: str) -> LayerProgress:
        layer = self.layers.get(layer_id)
        if layer is None:
            layer = self.layers[layer_id] = LayerProgress(layer_id=layer_id)
        return layer

    def feed(self, event: dict[str, Any]) -> list[PullProgressEvent]:
        """Apply one engine pull event; return the events to publish for it."""
        status = str(event.get("status", "")).strip()
        lowered = status.lower()
        if lowered.startswith("status:"):
            return [self._event("status", message=status.split(":", 1)[1].strip())]
        if lowered.startswith("digest:"):
            self.digest = status.split(":", 1)[1].strip()
            return [self._event("digest", digest=self.digest)]

        layer_id = event.get("id")
        detail = event.get("progressDetail") or {}
        if not layer_id or not self._apply(str(layer_id), lowered, detail):
            return []
        if lowered in _UPDATE_STATUSES:
            self.updated = True

        now = self._clock()
        if self._last_emit is not None and now - self._last_emit < self.interval:
            return []
        self._last_emit = now
        return [self.snapshot()]

    def _apply(self, layer_id: str, status: str, detail: dict[str, Any]) -> bool:
        if status in _WAITING_STATUSES:
            self._layer(layer_id)
        elif status == "downloading":
            layer = self._layer(layer_id)
            layer.status = LayerStatus.DOWNLOADING
            layer.bytes_done = int(detail.get("current") or 0)
            layer.bytes_total = int(detail.get("total") or layer.bytes_total)
        elif status == "extracting":
            self._layer(layer_id).status = LayerStatus.EXTRACTING
        elif status in _COMPLETE_STATUSES:
            layer = self._layer(layer_id)
            if status == "download complete" and layer.bytes_total:
                layer.bytes_done = layer.bytes_total
            layer.status = LayerStatus.COMPLETE
        else:
            return False
        return True

    def snapshot(self) -> PullProgressEvent:
        sized = [layer for layer in self.layers.values() if layer.bytes_total]
        done = sum(layer.bytes_done for layer in sized)
        size = sum(layer.bytes_total for layer in sized)
        completed = sum(1 for layer in self.layers.values() if layer.status is LayerStatus.COMPLETE)
        return self._event(
            "downloading",
            layers=LayerCounts(completed=completed, total=len(self.layers)),
            byte_counts=ByteCounts(downloaded=format_bytes(done), total=format_bytes(size)),
            percent=round(done / size * 100) if size else 0,
        )

    def finish(self) -> PullProgressEvent | None:
        """Final snapshot, or ``None`` when no layer was ever reported."""
        if not self.layers:
            return None
        return self.snapshot()
