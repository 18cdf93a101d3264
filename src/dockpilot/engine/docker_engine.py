"""Docker implementation of the engine interface.

Structured calls (inspect, exec, pull, restart, prune) go through the
``docker`` SDK on a worker thread.  Log follows and compose actions run the
Docker CLI as asyncio subprocesses so that stdout and stderr stay separate
and the follow can be stopped by terminating the child.

Dependencies: engine/base, engine/compose, engine/process, errors
Wired in: server/app.py → create_app()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import socket
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from dockpilot.engine.base import ContainerRef, EngineLogLine, PruneResult
from dockpilot.engine.compose import ComposeProject, dropped_env_keys
from dockpilot.engine.process import SubprocessOutput, child_environment, spawn
from dockpilot.errors import (
    ContainerNotFoundError,
    ContainerNotRunningError,
    EngineError,
    EngineUnavailableError,
    ImageNotFoundError,
    OperationFailedError,
)

_log = logging.getLogger(__name__)

_T = TypeVar("_T")

SHELL_CANDIDATES: tuple[str, ...] = ("/bin/bash", "/bin/sh", "/bin/ash")
FALLBACK_SHELL = "sh"
_RECV_SIZE = 4096
_PULL_DONE = object()
_COMPOSE_PROJECT_LABEL = "com.docker.compose.project"


def split_image_ref(ref: str) -> tuple[str, str | None]:
    """Split ``repo[:tag]`` into repository and tag, ignoring registry ports.

    Digest references are returned whole with no tag.
    """
    if "@" in ref:
        return ref, None
    head, sep, tail = ref.rpartition(":")
    if sep and "/" not in tail:
        return head, tail
    return ref, "latest"


class DockerLogTail:
    """``docker logs --follow`` for one container."""

    def __init__(self, container_id: str, output: SubprocessOutput) -> None:
        self._container_id = container_id
        self._output = output

    async def __aiter__(self) -> AsyncIterator[EngineLogLine]:
        async for line in self._output.lines():
            yield line
        code = await self._output.wait()
        if code != 0:
            detail = self._output.last_stderr or f"exit code {code}"
            raise EngineUnavailableError(f"Log follow for {self._container_id} failed: {detail}")

    async def aclose(self) -> None:
        await self._output.terminate()


class DockerExecChannel:
    """Raw socket of a TTY exec started through the Docker API."""

    def __init__(
        self,
        api: Any,
        exec_id: str,
        sock: Any,
        shell: str,
    ) -> None:
        self._api = api
        self._exec_id = exec_id
        # The SDK wraps the socket in a SocketIO on some transports.
        self._sock = getattr(sock, "_sock", sock)
        self.shell = shell
        self._closed = False

    async def read(self) -> bytes:
        if self._closed:
            return b""
        try:
            return await asyncio.to_thread(self._sock.recv, _RECV_SIZE)
        except OSError as exc:
            if self._closed:
                return b""
            raise EngineUnavailableError(f"Shell output failed: {exc}") from exc

    async def write(self, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._sock.sendall, data)
        except OSError as exc:
            raise EngineUnavailableError(f"Shell input failed: {exc}") from exc

    async def resize(self, cols: int, rows: int) -> None:
        try:
            await asyncio.to_thread(self._api.exec_resize, self._exec_id, height=rows, width=cols)
        except (DockerException, OSError) as exc:
            raise EngineUnavailableError(f"Resize failed: {exc}") from exc

    async def close(self) -> int | None:
        if not self._closed:
            self._closed = True
            with contextlib.suppress(OSError):
                self._sock.shutdown(socket.SHUT_RDWR)
            with contextlib.suppress(OSError):
                self._sock.close()
        try:
            info = await asyncio.to_thread(self._api.exec_inspect, self._exec_id)
        except (DockerException, OSError) as exc:
            _log.debug("exec_inspect after close failed for %s: %s", self._exec_id, exc)
            return None
        code = info.get("ExitCode")
        return int(code) if code is not None and not info.get("Running") else None


class DockerEngine:
    """Engine adapter backed by a local or remote Docker daemon."""

    def __init__(
        self,
        *,
        stacks_dir: Path,
        docker_cli: str = "docker",
        docker_host: str | None = None,
    ) -> None:
        self.stacks_dir = stacks_dir
        self.docker_cli = docker_cli
        self._docker_host = docker_host
        self._client: docker.DockerClient | None = None

    # -- client plumbing ----------------------------------------------------

    def _docker(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self._docker_host:
                    self._client = docker.DockerClient(base_url=self._docker_host)
                else:
                    self._client = docker.from_env()
            except DockerException as exc:
                raise EngineUnavailableError(f"Cannot connect to Docker: {exc}") from exc
        return self._client

    async def _call(self, fn: Callable[..., _T], *args: Any, **kwargs: Any) -> _T:
        """Run a blocking SDK call on a worker thread with error translation."""
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except EngineError:
            raise
        except APIError as exc:
            raise OperationFailedError(str(exc.explanation or exc)) from exc
        except (DockerException, OSError) as exc:
            raise EngineUnavailableError(f"Docker engine unavailable: {exc}") from exc

    def _get_container(self, container_id: str) -> Any:
        try:
            return self._docker().containers.get(container_id)
        except NotFound as exc:
            raise ContainerNotFoundError(container_id) from exc

    def _cli_env(self) -> dict[str, str]:
        env = child_environment()
        if self._docker_host:
            env["DOCKER_HOST"] = self._docker_host
        return env

    async def ping(self) -> None:
        await self._call(lambda: self._docker().ping())

    async def close(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await asyncio.to_thread(client.close)

    # -- logs -----------------------------------------------------------------

    async def tail_logs(self, container_id: str, *, tail: int) -> DockerLogTail:
        await self._call(self._get_container, container_id)
        argv = [self.docker_cli, "logs", "--follow", "--tail", str(tail), container_id]
        output = await spawn(argv, env=self._cli_env())
        _log.debug("Log follow started for %s (pid %d)", container_id, output.pid)
        return DockerLogTail(container_id, output)

    # -- shell ----------------------------------------------------------------

    def _detect_shell(self, container: Any) -> str:
        for candidate in SHELL_CANDIDATES:
            result = container.exec_run(["test", "-x", candidate])
            if result.exit_code == 0:
                return candidate
        return FALLBACK_SHELL

    def _open_exec(self, container_id: str, cols: int, rows: int) -> DockerExecChannel:
        container = self._get_container(container_id)
        if container.status != "running":
            raise ContainerNotRunningError(container_id)
        shell = self._detect_shell(container)
        api = self._docker().api
        created = api.exec_create(
            container.id,
            [shell],
            stdin=True,
            stdout=True,
            stderr=True,
            tty=True,
            environment={
                "TERM": "xterm-256color",
                "COLORTERM": "truecolor",
                "COLUMNS": str(cols),
                "LINES": str(rows),
            },
        )
        exec_id = created["Id"]
        sock = api.exec_start(exec_id, tty=True, socket=True)
        api.exec_resize(exec_id, height=rows, width=cols)
        return DockerExecChannel(api, exec_id, sock, shell)

    async def exec_shell(self, container_id: str, *, cols: int, rows: int) -> DockerExecChannel:
        return await self._call(self._open_exec, container_id, cols, rows)

    # -- compose ----------------------------------------------------------------

    async def run_operation(self, stack: str, args: Sequence[str]) -> SubprocessOutput:
        project = ComposeProject.resolve(self.stacks_dir, stack)
        env = self._cli_env()
        for key in dropped_env_keys():
            env.pop(key, None)
        argv = project.command(self.docker_cli, args)
        _log.info("Running compose for stack %s: %s", project.name, " ".join(args))
        return await spawn(argv, cwd=project.directory, env=env)

    # -- images -----------------------------------------------------------------

    async def pull_image(self, ref: str) -> AsyncIterator[dict[str, Any]]:
        """Yield the daemon's decoded pull progress messages for *ref*."""
        repository, tag = split_image_ref(ref)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[object] = asyncio.Queue()

        def _produce() -> None:
            try:
                stream = self._docker().api.pull(repository, tag=tag, stream=True, decode=True)
                for event in stream:
                    loop.call_soon_threadsafe(queue.put_nowait, event)
            except Exception as exc:
                loop.call_soon_threadsafe(queue.put_nowait, exc)
            else:
                loop.call_soon_threadsafe(queue.put_nowait, _PULL_DONE)

        worker = loop.run_in_executor(None, _produce)
        worker.add_done_callback(lambda _f: _log.debug("Pull worker for %s finished", ref))
        while True:
            item = await queue.get()
            if item is _PULL_DONE:
                return
            if isinstance(item, EngineError):
                raise item
            if isinstance(item, (ImageNotFound, NotFound)):
                raise ImageNotFoundError(ref) from item
            if isinstance(item, APIError):
                raise OperationFailedError(str(item.explanation or item)) from item
            if isinstance(item, (DockerException, OSError)):
                raise EngineUnavailableError(f"Docker engine unavailable: {item}") from item
            if isinstance(item, BaseException):
                raise item
            event: dict[str, Any] = item  # type: ignore[assignment]
            if "error" in event:
                detail = event.get("errorDetail") or {}
                raise OperationFailedError(str(detail.get("message") or event["error"]))
            yield event

    async def container_image(self, container_id: str) -> str:
        def _image() -> str:
            container = self._get_container(container_id)
            configured = container.attrs.get("Config", {}).get("Image")
            if configured:
                return str(configured)
            tags = container.image.tags
            if not tags:
                raise ImageNotFoundError(container.image.id)
            return str(tags[0])

        return await self._call(_image)

    async def restart_container(self, container_id: str) -> None:
        def _restart() -> None:
            self._get_container(container_id).restart()

        await self._call(_restart)

    async def containers_using_image(self, ref: str) -> list[ContainerRef]:
        def _list() -> list[ContainerRef]:
            found = self._docker().containers.list(all=True, filters={"ancestor": ref})
            return [
                ContainerRef(
                    id=c.id,
                    name=c.name,
                    compose_project=c.labels.get(_COMPOSE_PROJECT_LABEL),
                )
                for c in found
            ]

        return await self._call(_list)

    async def prune_dangling_images(self) -> PruneResult:
        result = await self._call(lambda: self._docker().images.prune(filters={"dangling": True}))
        deleted = result.get("ImagesDeleted") or []
        removed = [str(entry.get("Deleted") or entry.get("Untagged")) for entry in deleted]
        return PruneResult(removed=removed, reclaimed_bytes=int(result.get("SpaceReclaimed") or 0))
