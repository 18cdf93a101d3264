"""Bounded single-producer/single-consumer queue with drop accounting.

Log fan-out uses ``offer`` (never waits, evicts the oldest droppable item on
overflow and remembers how many were lost).  Shell output and operation
events use ``put``, which waits for space instead of dropping.

Dependencies: (none, leaf module)
Wired in: streaming/log_hub.py, streaming/shell_bridge.py, streaming/operations.py
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

T = TypeVar("T")


class OutboxClosed(Exception):
    """Raised by ``get`` once the outbox is closed and drained."""


class _DropRun:
    """Placeholder standing where a run of evicted items used to be."""

    __slots__ = ("count",)

    def __init__(self) -> None:
        self.count = 0


class Outbox(Generic[T]):
    def __init__(self, maxsize: int, *, on_drop: Callable[[int], T] | None = None) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._on_drop = on_drop
        self._items: deque[tuple[T | _DropRun, bool]] = deque()
        self._size = 0
        self.dropped_total = 0
        self._closed = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

    def __len__(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    def _record_drop(self, index: int) -> None:
        """Count one lost item whose slot was *index* in the queue."""
        self.dropped_total += 1
        if self._on_drop is None:
            return
        for neighbour in (index - 1, index):
            if 0 <= neighbour < len(self._items):
                entry = self._items[neighbour][0]
                if isinstance(entry, _DropRun):
                    entry.count += 1
                    return
        run = _DropRun()
        run.count = 1
        self._items.insert(index, (run, False))
        self._readable.set()

    def _evict_oldest_droppable(self) -> bool:
        for index, (_, droppable) in enumerate(self._items):
            if droppable:
                del self._items[index]
                self._size -= 1
                self._record_drop(index)
                return True
        return False

    def _append(self, item: T, droppable: bool) -> None:
        self._items.append((item, droppable))
        self._size += 1
        self._readable.set()
        if self._size >= self.maxsize:
            self._writable.clear()

    def offer(self, item: T, *, droppable: bool = True) -> bool:
        """Enqueue without waiting. Returns ``False`` if the outbox is closed.

        On overflow the oldest droppable item is evicted and a drop marker
        takes its place in the queue, so the marker is never delivered ahead
        of items that were queued before the lost ones.  Non-droppable items
        are always accepted, even past ``maxsize``.  A droppable item that
        finds nothing to evict is itself dropped.
        """
        if self._closed:
            return False
        if self._size >= self.maxsize and not self._evict_oldest_droppable():
            if droppable:
                self._record_drop(len(self._items))
                return True
        self._append(item, droppable)
        return True

    async def put(self, item: T) -> bool:
        """Enqueue, waiting for space. Returns ``False`` if the outbox is closed."""
        while not self._closed and self._size >= self.maxsize:
            self._writable.clear()
            await self._writable.wait()
        if self._closed:
            return False
        self._append(item, False)
        return True

    async def get(self) -> T:
        """Return the next item, or a drop marker where items were lost."""
        while not self._items:
            if self._closed:
                raise OutboxClosed
            self._readable.clear()
            await self._readable.wait()
        entry, _ = self._items.popleft()
        if isinstance(entry, _DropRun):
            assert self._on_drop is not None
            return self._on_drop(entry.count)
        self._size -= 1
        if self._size < self.maxsize:
            self._writable.set()
        return entry

    def close(self, *, drain: bool = True) -> None:
        """Stop accepting items.  With ``drain=False`` pending items are discarded."""
        self._closed = True
        if not drain:
            self._items.clear()
            self._size = 0
        self._readable.set()
        self._writable.set()

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            try:
                yield await self.get()
            except OutboxClosed:
                return
