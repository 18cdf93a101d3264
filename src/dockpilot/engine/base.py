"""Engine adapter interface consumed by the streaming components.

Every call either returns an async sequence of structured events, a raw byte
channel, or a process handle with an exit status.  Implementations translate
their own failures into ``dockpilot.errors`` types.

Dependencies: errors
Wired in: engine/docker_engine.py, streaming/*, tests/conftest.py
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

StreamName = Literal["stdout", "stderr"]


@dataclass(frozen=True)
class EngineLogLine:
    """One line of output from a container or an engine-side process."""

    stream: StreamName
    text: str


@dataclass(frozen=True)
class ContainerRef:
    """Minimal description of a container affected by an image update."""

    id: str
    name: str
    compose_project: str | None = None


@dataclass(frozen=True)
class PruneResult:
    removed: list[str] = field(default_factory=list)
    reclaimed_bytes: int = 0


class LogTail(Protocol):
    """Live log follow for a single container.

    Iteration finishing normally means the container stopped producing
    output.  ``EngineError`` raised from iteration means the follow broke.
    """

    def __aiter__(self) -> AsyncIterator[EngineLogLine]: ...

    async def aclose(self) -> None: ...


class ExecChannel(Protocol):
    """A TTY-backed exec inside a container."""

    shell: str

    async def read(self) -> bytes:
        """Return the next chunk of terminal output, ``b""`` once the exec ended."""
        ...

    async def write(self, data: bytes) -> None: ...

    async def resize(self, cols: int, rows: int) -> None: ...

    async def close(self) -> int | None:
        """Terminate the exec and return its exit code when known."""
        ...


class OperationProcess(Protocol):
    """An engine-side process with merged, stream-tagged output lines."""

    def lines(self) -> AsyncIterator[EngineLogLine]: ...

    async def wait(self) -> int: ...

    async def terminate(self) -> None: ...


class Engine(Protocol):
    """Capabilities the streaming subsystem needs from the container runtime."""

    async def ping(self) -> None: ...

    async def tail_logs(self, container_id: str, *, tail: int) -> LogTail: ...

    async def exec_shell(self, container_id: str, *, cols: int, rows: int) -> ExecChannel: ...

    async def run_operation(self, stack: str, args: Sequence[str]) -> OperationProcess: ...

    def pull_image(self, ref: str) -> AsyncIterator[dict[str, Any]]: ...

    async def container_image(self, container_id: str) -> str: ...

    async def restart_container(self, container_id: str) -> None: ...

    async def containers_using_image(self, ref: str) -> list[ContainerRef]: ...

    async def prune_dangling_images(self) -> PruneResult: ...

    async def close(self) -> None: ...
