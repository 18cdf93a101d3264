"""Tests for pull event aggregation and byte formatting."""

from __future__ import annotations

import pytest
from conftest import layer_events

from dockpilot.streaming.pull_progress import (
    LayerStatus,
    PullProgressTracker,
    describe_pull_event,
    format_bytes,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.parametrize(
    ("num", "expected"),
    [
        (0, "0 B"),
        (1023, "1023 B"),
        (1024, "1.0 KB"),
        (1536, "1.5 KB"),
        (5 * 1024**2, "5.0 MB"),
        (3 * 1024**3, "3.00 GB"),
    ],
)
def test_format_bytes(num: int, expected: str) -> None:
    assert format_bytes(num) == expected


def test_describe_pull_event_matches_cli_output() -> None:
    event = {"status": "Downloading", "id": "a1b2", "progress": "[==>   ] 1MB/4MB"}
    assert describe_pull_event(event) == "a1b2: Downloading [==>   ] 1MB/4MB"
    assert describe_pull_event({"status": "Pulling from library/nginx"}) == (
        "Pulling from library/nginx"
    )


def test_layers_and_bytes_are_aggregated() -> None:
    tracker = PullProgressTracker("app:latest", interval=0.0)
    for event in layer_events("l1", 2000):
        tracker.feed(event)
    tracker.feed({"status": "Pulling fs layer", "id": "l2"})
    tracker.feed(
        {"status": "Downloading", "id": "l2", "progressDetail": {"current": 500, "total": 2000}}
    )

    snap = tracker.snapshot().to_wire()
    assert snap["layers"] == {"completed": 1, "total": 2}
    assert snap["bytes"] == {"downloaded": "2.4 KB", "total": "3.9 KB"}
    assert snap["percent"] == 62
    assert tracker.layers["l2"].status is LayerStatus.DOWNLOADING
    assert tracker.updated is True


def test_already_existing_layers_do_not_count_as_update() -> None:
    tracker = PullProgressTracker("app:latest", interval=0.0)
    tracker.feed({"status": "Already exists", "id": "l1"})
    assert tracker.updated is False
    assert tracker.layers["l1"].status is LayerStatus.COMPLETE


def test_status_and_digest_lines_become_notices() -> None:
    tracker = PullProgressTracker("app:latest", current=2, total=3)

    (digest,) = tracker.feed({"status": "Digest: sha256:feed"})
    (status,) = tracker.feed({"status": "Status: Image is up to date for app:latest"})

    assert digest.to_wire() == {
        "type": "pull-progress",
        "status": "digest",
        "current": 2,
        "total": 3,
        "image": "app:latest",
        "digest": "sha256:feed",
    }
    assert status.message == "Image is up to date for app:latest"
    assert tracker.digest == "sha256:feed"


def test_snapshots_are_throttled() -> None:
    clock = _Clock()
    tracker = PullProgressTracker("app:latest", interval=0.5, clock=clock)

    assert len(tracker.feed({"status": "Pulling fs layer", "id": "l1"})) == 1
    clock.now = 0.1
    assert tracker.feed({"status": "Waiting", "id": "l2"}) == []
    clock.now = 0.7
    assert len(tracker.feed({"status": "Extracting", "id": "l1"})) == 1


def test_unknown_status_is_ignored() -> None:
    tracker = PullProgressTracker("app:latest", interval=0.0)
    assert tracker.feed({"status": "Verifying Checksum", "id": "l1"}) == []
    assert tracker.finish() is None
