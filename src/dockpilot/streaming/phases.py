"""Best-effort deploy phase detection over compose output text.

The phase is cosmetic.  Detection is a keyword match on human-oriented
output and may skip or misread phases; nothing downstream depends on it.
"""

from __future__ import annotations

from enum import StrEnum


class DeployPhase(StrEnum):
    PULLING = "pulling"
    CREATING = "creating"
    STARTING = "starting"
    RUNNING = "running"


_PHASE_ORDER: tuple[DeployPhase, ...] = tuple(DeployPhase)

# Checked in this order; the first phase with a matching keyword wins.
_KEYWORDS: tuple[tuple[DeployPhase, tuple[str, ...]], ...] = (
    (DeployPhase.PULLING, ("pulling", "downloading", "pull complete")),
    (DeployPhase.CREATING, ("creating", "created")),
    (DeployPhase.STARTING, ("starting", "started")),
    (DeployPhase.RUNNING, ("running", "done", "up-to-date")),
)


def detect_phase(text: str) -> DeployPhase | None:
    lowered = text.lower()
    for phase, keywords in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return phase
    return None


class PhaseTracker:
    """Keep the furthest phase seen so far; report only forward moves."""

    def __init__(self) -> None:
        self.current: DeployPhase | None = None

    def observe(self, text: str) -> DeployPhase | None:
        detected = detect_phase(text)
        if detected is None:
            return None
        if self.current is not None and (
            _PHASE_ORDER.index(detected) <= _PHASE_ORDER.index(self.current)
        ):
            return None
        self.current = detected
        return detected
