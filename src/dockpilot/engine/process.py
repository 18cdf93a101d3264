"""Asyncio subprocess wrapper that merges stdout and stderr into tagged lines.

Used for ``docker logs --follow`` and ``docker compose`` invocations.

Dependencies: engine/base, errors
Wired in: engine/docker_engine.py
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path

from dockpilot.engine.base import EngineLogLine, StreamName
from dockpilot.errors import EngineUnavailableError

_log = logging.getLogger(__name__)

_STREAM_LIMIT = 1024 * 1024
_PENDING_LINES = 256
_TERMINATE_GRACE_SECONDS = 5.0
_EOF = None


class SubprocessOutput:
    """Line-oriented view over a running subprocess.

    Two reader tasks push decoded lines into one bounded queue, so a slow
    consumer pauses the readers (and eventually the child) instead of
    growing memory.
    """

    def __init__(self, process: asyncio.subprocess.Process, argv: Sequence[str]) -> None:
        self._process = process
        self._argv = list(argv)
        self._queue: asyncio.Queue[EngineLogLine | None] = asyncio.Queue(_PENDING_LINES)
        self._last_stderr = ""
        self._readers = [
            asyncio.create_task(self._read(process.stdout, "stdout")),
            asyncio.create_task(self._read(process.stderr, "stderr")),
        ]

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def last_stderr(self) -> str:
        """Most recent non-empty stderr line, used for failure messages."""
        return self._last_stderr

    async def _read(self, stream: asyncio.StreamReader | None, name: StreamName) -> None:
        if stream is not None:
            try:
                async for raw in stream:
                    text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                    if name == "stderr" and text.strip():
                        self._last_stderr = text.strip()
                    await self._queue.put(EngineLogLine(stream=name, text=text))
            except (ValueError, ConnectionError) as exc:
                _log.warning("Output reader for %s (%s) stopped: %s", self._argv[0], name, exc)
        await self._queue.put(_EOF)

    async def lines(self) -> AsyncIterator[EngineLogLine]:
        open_streams = len(self._readers)
        while open_streams:
            item = await self._queue.get()
            if item is _EOF:
                open_streams -= 1
                continue
            yield item

    async def wait(self) -> int:
        return await self._process.wait()

    async def terminate(self) -> None:
        """Stop the readers and the child process. Safe to call repeatedly."""
        for reader in self._readers:
            reader.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        if self._process.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            self._process.terminate()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            _log.warning("Process %d ignored SIGTERM, killing", self._process.pid)
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()
            await self._process.wait()


async def spawn(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> SubprocessOutput:
    """Start *argv* with piped output.

    Raises ``EngineUnavailableError`` when the executable cannot be started.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
    except OSError as exc:
        raise EngineUnavailableError(f"Failed to start {argv[0]}: {exc}") from exc
    _log.debug("Spawned pid %d: %s", process.pid, " ".join(argv))
    return SubprocessOutput(process, argv)


def child_environment(drop: Sequence[str] = ()) -> dict[str, str]:
    """Copy of the current environment without the keys in *drop*."""
    env = dict(os.environ)
    for key in drop:
        env.pop(key, None)
    return env
