"""Tests for the Docker adapter against a mocked SDK client."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound

from dockpilot.engine.docker_engine import DockerEngine, DockerExecChannel, split_image_ref
from dockpilot.errors import (
    ContainerNotFoundError,
    ContainerNotRunningError,
    EngineUnavailableError,
    ImageNotFoundError,
    OperationFailedError,
    StackNotFoundError,
)


@pytest.fixture()
def sdk() -> MagicMock:
    return MagicMock()


@pytest.fixture()
def docker_engine(tmp_path: Path, sdk: MagicMock) -> DockerEngine:
    engine = DockerEngine(stacks_dir=tmp_path)
    engine._client = sdk
    return engine


def _container(status: str = "running", **attrs: Any) -> MagicMock:
    container = MagicMock()
    container.id = "abc123"
    container.status = status
    container.attrs = attrs
    return container


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("nginx", ("nginx", "latest")),
        ("nginx:1.27", ("nginx", "1.27")),
        ("registry.local:5000/team/app", ("registry.local:5000/team/app", "latest")),
        ("registry.local:5000/team/app:v2", ("registry.local:5000/team/app", "v2")),
        ("app@sha256:abc", ("app@sha256:abc", None)),
    ],
)
def test_split_image_ref(ref: str, expected: tuple[str, str | None]) -> None:
    assert split_image_ref(ref) == expected


# ---------------------------------------------------------------------------
# Resolution and error translation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_missing_container_is_translated(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    sdk.containers.get.side_effect = NotFound("no such container")
    with pytest.raises(ContainerNotFoundError, match="Container not found: ghost"):
        await docker_engine.container_image("ghost")


@pytest.mark.asyncio()
async def test_unreachable_daemon_is_translated(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    sdk.ping.side_effect = ConnectionRefusedError("refused")
    with pytest.raises(EngineUnavailableError, match="Docker engine unavailable"):
        await docker_engine.ping()


@pytest.mark.asyncio()
async def test_api_error_becomes_operation_failure(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    sdk.containers.get.return_value.restart.side_effect = APIError(
        "500", explanation="cannot restart"
    )
    with pytest.raises(OperationFailedError, match="cannot restart"):
        await docker_engine.restart_container("abc123")


@pytest.mark.asyncio()
async def test_container_image_prefers_configured_reference(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    sdk.containers.get.return_value = _container(Config={"Image": "nginx:1.27"})
    assert await docker_engine.container_image("abc123") == "nginx:1.27"


@pytest.mark.asyncio()
async def test_run_operation_requires_known_stack(docker_engine: DockerEngine) -> None:
    with pytest.raises(StackNotFoundError):
        await docker_engine.run_operation("missing", ["up", "-d"])


# ---------------------------------------------------------------------------
# Shell exec
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_exec_shell_refuses_stopped_container(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    sdk.containers.get.return_value = _container(status="exited")
    with pytest.raises(ContainerNotRunningError, match="Container is not running"):
        await docker_engine.exec_shell("abc123", cols=80, rows=24)


@pytest.mark.asyncio()
async def test_exec_shell_picks_first_available_shell(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    container = _container()
    container.exec_run.side_effect = [MagicMock(exit_code=1), MagicMock(exit_code=0)]
    sdk.containers.get.return_value = container
    sdk.api.exec_create.return_value = {"Id": "exec-1"}

    channel = await docker_engine.exec_shell("abc123", cols=132, rows=43)

    assert channel.shell == "/bin/sh"
    command = sdk.api.exec_create.call_args.args[1]
    assert command == ["/bin/sh"]
    environment = sdk.api.exec_create.call_args.kwargs["environment"]
    assert environment["TERM"] == "xterm-256color"
    assert (environment["COLUMNS"], environment["LINES"]) == ("132", "43")
    sdk.api.exec_resize.assert_called_once_with("exec-1", height=43, width=132)


@pytest.mark.asyncio()
async def test_exec_channel_reports_exit_code_on_close() -> None:
    api = MagicMock()
    api.exec_inspect.return_value = {"ExitCode": 130, "Running": False}
    sock = MagicMock(spec=["recv", "sendall", "shutdown", "close"])
    sock.recv.return_value = b"hello"
    channel = DockerExecChannel(api, "exec-1", sock, "/bin/sh")

    assert await channel.read() == b"hello"
    await channel.write(b"exit\r")
    assert await channel.close() == 130
    assert await channel.read() == b""
    sock.sendall.assert_called_once_with(b"exit\r")


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_pull_image_yields_events_and_raises_on_error_event(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    sdk.api.pull.return_value = iter(
        [
            {"status": "Pulling from library/nginx", "id": "latest"},
            {"error": "unauthorized", "errorDetail": {"message": "pull access denied"}},
        ]
    )
    seen = []
    with pytest.raises(OperationFailedError, match="pull access denied"):
        async for event in docker_engine.pull_image("nginx"):
            seen.append(event)

    assert seen == [{"status": "Pulling from library/nginx", "id": "latest"}]
    sdk.api.pull.assert_called_once_with("nginx", tag="latest", stream=True, decode=True)


@pytest.mark.asyncio()
async def test_pull_of_unknown_image(docker_engine: DockerEngine, sdk: MagicMock) -> None:
    sdk.api.pull.side_effect = NotFound("manifest unknown")
    with pytest.raises(ImageNotFoundError, match="Image not found: nope:1"):
        async for _ in docker_engine.pull_image("nope:1"):
            pass


@pytest.mark.asyncio()
async def test_containers_using_image_reads_compose_label(
    docker_engine: DockerEngine, sdk: MagicMock
) -> None:
    stacked = MagicMock(id="c1", labels={"com.docker.compose.project": "web"})
    stacked.name = "web-app-1"
    plain = MagicMock(id="c2", labels={})
    plain.name = "solo"
    sdk.containers.list.return_value = [stacked, plain]

    refs = await docker_engine.containers_using_image("app:latest")

    assert [(r.id, r.name, r.compose_project) for r in refs] == [
        ("c1", "web-app-1", "web"),
        ("c2", "solo", None),
    ]
    sdk.containers.list.assert_called_once_with(all=True, filters={"ancestor": "app:latest"})


@pytest.mark.asyncio()
async def test_prune_reports_removed_images(docker_engine: DockerEngine, sdk: MagicMock) -> None:
    sdk.images.prune.return_value = {
        "ImagesDeleted": [{"Deleted": "sha256:1"}, {"Untagged": "old:tag"}],
        "SpaceReclaimed": 4096,
    }
    result = await docker_engine.prune_dangling_images()
    assert result.removed == ["sha256:1", "old:tag"]
    assert result.reclaimed_bytes == 4096
