"""Tests for the SSE operation endpoints and the REST status routes."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import replace
from typing import Any

import httpx
import pytest
from conftest import FakeEngine, FakeProcess, layer_events
from fastapi.testclient import TestClient

from dockpilot.config import Settings
from dockpilot.errors import ImageNotFoundError
from dockpilot.server.app import create_app
from dockpilot.server.sse import SSE_HEADERS

_UP = ("up", "-d", "--pull", "missing", "--build")


@pytest.fixture()
def client(settings: Settings, engine: FakeEngine) -> Iterator[TestClient]:
    with TestClient(create_app(settings, engine)) as test_client:
        yield test_client


def _events(response: httpx.Response) -> list[dict[str, Any]]:
    return [
        json.loads(block[len("data: ") :])
        for block in response.text.split("\n\n")
        if block.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Stack and container streams
# ---------------------------------------------------------------------------


def test_stack_start_stream(client: TestClient, engine: FakeEngine) -> None:
    engine.processes[("web", _UP)] = FakeProcess([("stdout", "Network web_default Created")])
    response = client.get("/api/stacks/web/stream-start")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    for name, value in SSE_HEADERS.items():
        if name != "Connection":
            assert response.headers[name] == value
    events = _events(response)
    assert events[0] == {"type": "stdout", "data": "Network web_default Created"}
    assert events[-1] == {"type": "done", "data": "Stack started successfully"}


def test_stack_failure_stream_ends_with_error(client: TestClient, engine: FakeEngine) -> None:
    engine.processes[("web", ("down",))] = FakeProcess(
        [("stderr", "Error response from daemon: network in use")], exit_code=1
    )
    events = _events(client.get("/api/stacks/web/stream-down"))
    assert events[-1] == {"type": "error", "data": "network in use"}


def test_unknown_stack_action_is_404(client: TestClient) -> None:
    response = client.get("/api/stacks/web/stream-explode")
    assert response.status_code == 404
    assert response.json()["detail"] == "Unknown stack action: explode"


def test_container_update_stream(client: TestClient, engine: FakeEngine) -> None:
    engine.container_images["c1"] = "redis:7"
    engine.pulls["redis:7"] = layer_events("l1", 2048)
    events = _events(client.get("/api/containers/c1/stream-update"))

    assert events[0] == {"type": "stdout", "data": "Pulling latest image: redis:7"}
    assert any(e["type"] == "pull-progress" for e in events)
    assert events[-1]["type"] == "done"
    assert engine.restarted == ["c1"]


# ---------------------------------------------------------------------------
# Batch update
# ---------------------------------------------------------------------------


def test_batch_stream_reports_each_image(client: TestClient, engine: FakeEngine) -> None:
    engine.pulls["imageA:latest"] = [ImageNotFoundError("imageA:latest")]
    response = client.post(
        "/api/updates/execute/stream",
        json={"images": [{"repository": "imageA"}, {"repository": "imageB", "currentTag": "2"}]},
    )

    events = _events(response)
    assert events[0] == {"type": "start", "total": 2, "message": "Starting update of 2 image(s)"}
    progress = [(e["current"], e["status"]) for e in events if e["type"] == "progress"]
    assert progress == [(1, "pulling"), (1, "failed"), (2, "pulling"), (2, "completed")]
    complete = events[-1]
    assert complete["type"] == "complete"
    assert (complete["total"], complete["successful"], complete["failed"]) == (2, 1, 1)
    assert engine.pulled == ["imageA:latest", "imageB:2"]

    history = client.get("/api/updates/history").json()
    assert [h["image"] for h in history] == ["imageB:2", "imageA:latest"]


def test_batch_without_images_is_rejected(client: TestClient) -> None:
    response = client.post("/api/updates/execute/stream", json={"images": []})
    assert response.status_code == 400
    assert response.json()["detail"] == "Images array is required"


# ---------------------------------------------------------------------------
# Status routes
# ---------------------------------------------------------------------------


def test_operations_are_listed_after_completion(client: TestClient) -> None:
    client.get("/api/stacks/web/stream-restart")

    operations = client.get("/api/operations").json()
    assert len(operations) == 1
    op = operations[0]
    assert (op["kind"], op["target"], op["phase"]) == ("stack.restart", "web", "done")
    assert op["summary"] == "Stack restarted successfully"

    single = client.get(f"/api/operations/{op['operationId']}")
    assert single.json() == op


def test_unknown_operation_is_404(client: TestClient) -> None:
    response = client.get("/api/operations/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Operation not found"


def test_health_reports_engine_state(client: TestClient, engine: FakeEngine) -> None:
    body = client.get("/api/health").json()
    assert body["status"] == "ok"
    assert body["engine"] == "ok"

    engine.available = False
    assert client.get("/api/health").json()["engine"] == "unavailable"


def test_lifespan_closes_engine(settings: Settings, engine: FakeEngine) -> None:
    with TestClient(create_app(settings, engine)):
        assert engine.calls["ping"] == 1
    assert engine.closed


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


def test_routes_require_key_when_configured(settings: Settings, engine: FakeEngine) -> None:
    app = create_app(replace(settings, api_key="s3cret"), engine)
    with TestClient(app) as client:
        assert client.get("/api/operations").status_code == 401
        assert client.get("/api/operations", headers={"X-API-Key": "wrong"}).status_code == 401
        assert client.get("/api/operations", headers={"X-API-Key": "s3cret"}).status_code == 200
        assert client.get("/api/health").status_code == 200
