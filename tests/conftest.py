"""Shared test fixtures for dockpilot.

``FakeEngine`` stands in for the Docker adapter.  Log follows, shell execs,
compose processes and image pulls are scripted per test, and every call is
counted so tests can assert how often the engine was reached.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from dockpilot.config import Settings
from dockpilot.engine.base import ContainerRef, EngineLogLine, PruneResult, StreamName
from dockpilot.errors import (
    ContainerNotFoundError,
    EngineError,
    EngineUnavailableError,
)

# ---------------------------------------------------------------------------
# Scripted engine objects
# ---------------------------------------------------------------------------


class FakeLogTail:
    """A log follow fed from a queue; ``None`` ends it, an exception breaks it."""

    def __init__(self, container_id: str, lines: Sequence[str] = (), *, follow: bool = True):
        self.container_id = container_id
        self.closed = False
        self._queue: asyncio.Queue[EngineLogLine | Exception | None] = asyncio.Queue()
        for text in lines:
            self.push(text)
        if not follow:
            self.end()

    def push(self, text: str, stream: StreamName = "stdout") -> None:
        self._queue.put_nowait(EngineLogLine(stream=stream, text=text))

    def end(self) -> None:
        self._queue.put_nowait(None)

    def fail(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    async def __aiter__(self) -> AsyncIterator[EngineLogLine]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def aclose(self) -> None:
        self.closed = True


class FakeExecChannel:
    def __init__(
        self,
        shell: str = "/bin/sh",
        output: Sequence[bytes] = (),
        *,
        exit_code: int | None = 0,
        eof: bool = False,
    ) -> None:
        self.shell = shell
        self.exit_code = exit_code
        self.written: list[bytes] = []
        self.resizes: list[tuple[int, int]] = []
        self.close_calls = 0
        self.close_error: Exception | None = None
        self._queue: asyncio.Queue[bytes | Exception] = asyncio.Queue()
        for chunk in output:
            self._queue.put_nowait(chunk)
        if eof:
            self._queue.put_nowait(b"")

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def feed(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def fail(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    async def read(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    async def resize(self, cols: int, rows: int) -> None:
        self.resizes.append((cols, rows))

    async def close(self) -> int | None:
        self.close_calls += 1
        self._queue.put_nowait(b"")
        if self.close_error is not None:
            raise self.close_error
        return self.exit_code


class FakeProcess:
    def __init__(
        self,
        lines: Sequence[tuple[StreamName, str]] = (),
        exit_code: int = 0,
        gate: asyncio.Event | None = None,
    ) -> None:
        self._lines = list(lines)
        self.exit_code = exit_code
        self.gate = gate
        self.terminated = False

    async def lines(self) -> AsyncIterator[EngineLogLine]:
        for stream, text in self._lines:
            yield EngineLogLine(stream=stream, text=text)
        if self.gate is not None:
            await self.gate.wait()

    async def wait(self) -> int:
        return self.exit_code

    async def terminate(self) -> None:
        self.terminated = True


class FakeEngine:
    """In-memory ``Engine`` with call counters and per-target scripts."""

    def __init__(self) -> None:
        self.available = True
        self.closed = False
        self.calls: defaultdict[str, int] = defaultdict(int)

        self.log_lines: dict[str, list[str]] = {}
        self.log_follow = True
        self.tail_errors: dict[str, EngineError] = {}
        self.tail_gate: asyncio.Event | None = None
        self.tail_breaks: dict[str, Exception] = {}
        self.tails: list[FakeLogTail] = []

        self.exec_errors: dict[str, EngineError] = {}
        self.exec_factory: Any = None
        self.channels: list[FakeExecChannel] = []

        self.processes: dict[tuple[str, tuple[str, ...]], FakeProcess] = {}
        self.operation_errors: dict[str, EngineError] = {}
        self.operations_run: list[tuple[str, tuple[str, ...]]] = []

        self.container_images: dict[str, str] = {}
        self.pulls: dict[str, list[dict[str, Any] | Exception]] = {}
        self.pulled: list[str] = []
        self.using_image: dict[str, list[ContainerRef]] = {}
        self.restart_errors: dict[str, EngineError] = {}
        self.restarted: list[str] = []
        self.prune_result = PruneResult()

    def _check(self, name: str) -> None:
        self.calls[name] += 1
        if not self.available:
            raise EngineUnavailableError("Cannot connect to the Docker daemon")

    async def ping(self) -> None:
        self._check("ping")

    async def tail_logs(self, container_id: str, *, tail: int) -> FakeLogTail:
        self._check("tail_logs")
        if self.tail_gate is not None:
            await self.tail_gate.wait()
        if container_id in self.tail_errors:
            raise self.tail_errors[container_id]
        history = self.log_lines.get(container_id, [])
        log_tail = FakeLogTail(
            container_id, history[-tail:] if tail else [], follow=self.log_follow
        )
        if container_id in self.tail_breaks:
            log_tail.fail(self.tail_breaks.pop(container_id))
        self.tails.append(log_tail)
        return log_tail

    async def exec_shell(self, container_id: str, *, cols: int, rows: int) -> FakeExecChannel:
        self._check("exec_shell")
        if container_id in self.exec_errors:
            raise self.exec_errors[container_id]
        channel = self.exec_factory() if self.exec_factory else FakeExecChannel()
        channel.resizes.append((cols, rows))
        self.channels.append(channel)
        return channel

    async def run_operation(self, stack: str, args: Sequence[str]) -> FakeProcess:
        self._check("run_operation")
        if stack in self.operation_errors:
            raise self.operation_errors[stack]
        key = (stack, tuple(args))
        self.operations_run.append(key)
        return self.processes.get(key) or FakeProcess()

    async def pull_image(self, ref: str) -> AsyncIterator[dict[str, Any]]:
        self._check("pull_image")
        self.pulled.append(ref)
        for event in self.pulls.get(ref, []):
            if isinstance(event, Exception):
                raise event
            yield event

    async def container_image(self, container_id: str) -> str:
        self._check("container_image")
        try:
            return self.container_images[container_id]
        except KeyError:
            raise ContainerNotFoundError(container_id) from None

    async def restart_container(self, container_id: str) -> None:
        self._check("restart_container")
        if container_id in self.restart_errors:
            raise self.restart_errors[container_id]
        self.restarted.append(container_id)

    async def containers_using_image(self, ref: str) -> list[ContainerRef]:
        self._check("containers_using_image")
        return list(self.using_image.get(ref, []))

    async def prune_dangling_images(self) -> PruneResult:
        self._check("prune_dangling_images")
        return self.prune_result

    async def close(self) -> None:
        self.closed = True


def layer_events(layer: str, size: int) -> list[dict[str, Any]]:
    """Pull events for one layer that downloads and completes."""
    return [
        {"status": "Pulling fs layer", "id": layer},
        {
            "status": "Downloading",
            "id": layer,
            "progressDetail": {"current": size // 2, "total": size},
            "progress": "[=====>     ]",
        },
        {"status": "Download complete", "id": layer},
        {"status": "Pull complete", "id": layer},
    ]


async def drain(outbox: Any, timeout: float = 1.0) -> list[Any]:
    """Collect everything an outbox yields until it closes."""

    async def _collect() -> list[Any]:
        return [item async for item in outbox]

    return await asyncio.wait_for(_collect(), timeout)


async def take(outbox: Any, count: int, timeout: float = 1.0) -> list[Any]:
    """Collect exactly *count* items from an outbox."""

    async def _collect() -> list[Any]:
        return [await outbox.get() for _ in range(count)]

    return await asyncio.wait_for(_collect(), timeout)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def settings(tmp_path: Any) -> Settings:
    return Settings(stacks_dir=tmp_path / "stacks", pull_progress_interval=0.0)
