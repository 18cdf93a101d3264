"""Operation Stream Controller: long-running engine operations as event streams.

Each operation runs in its own task and publishes to a bounded ``Outbox``
that waits for space instead of dropping.  Exactly one terminal event ends
every stream: ``done`` or ``complete`` on success, ``error`` on failure.

Detaching a consumer only stops delivery.  The engine-side work carries on
to completion and its outcome stays visible through ``get``/``list_all``.

Dependencies: engine/base, engine/compose, streaming/outbox, streaming/events,
    streaming/phases, streaming/pull_progress, errors
Wired in: server/app.py → create_app(), server/routes.py → SSE endpoints
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from dockpilot.engine.base import Engine, StreamName
from dockpilot.engine.compose import summarize_failure
from dockpilot.errors import EngineError, EngineUnavailableError, OperationFailedError
from dockpilot.streaming.events import (
    BatchCompleteEvent,
    BatchStartedEvent,
    DoneEvent,
    ErrorEvent,
    ItemProgressEvent,
    OperationEvent,
    OutputEvent,
    PhaseEvent,
    PullProgressEvent,
)
from dockpilot.streaming.outbox import Outbox
from dockpilot.streaming.phases import DeployPhase, PhaseTracker
from dockpilot.streaming.pull_progress import PullProgressTracker, describe_pull_event, format_bytes

_log = logging.getLogger(__name__)

_STDERR_TAIL = 50


class OperationKind(StrEnum):
    STACK_START = "stack.start"
    STACK_RESTART = "stack.restart"
    STACK_DOWN = "stack.down"
    STACK_UPDATE = "stack.update"
    CONTAINER_UPDATE = "container.update"
    IMAGES_UPDATE = "images.update"


class OperationPhase(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


_COMPOSE_ACTIONS: dict[OperationKind, tuple[tuple[str, ...], str]] = {
    OperationKind.STACK_START: (
        ("up", "-d", "--pull", "missing", "--build"),
        "Stack started successfully",
    ),
    OperationKind.STACK_RESTART: (("restart",), "Stack restarted successfully"),
    OperationKind.STACK_DOWN: (("down",), "Stack downed successfully"),
}


@dataclass
class BatchItem:
    image: str
    status: str = "pending"
    error: str | None = None
    restarted: list[dict[str, Any]] = field(default_factory=list)
    affected: int = 0

    def to_result(self) -> dict[str, Any]:
        result: dict[str, Any] = {"image": self.image, "status": self.status}
        if self.error is not None:
            result["error"] = self.error
        if self.status == "completed":
            result["affectedContainers"] = self.affected
            result["restartedContainers"] = list(self.restarted)
        return result


@dataclass
class BatchProgress:
    """Position of a batch update; ``current_index`` only moves forward."""

    total: int
    items: list[BatchItem]
    current_index: int = 0

    def advance(self) -> int:
        if self.current_index >= self.total:
            raise ValueError("Batch already finished")
        self.current_index += 1
        return self.current_index

    @property
    def successful(self) -> int:
        return sum(1 for item in self.items if item.status == "completed")

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if item.status == "failed")


@dataclass(eq=False)
class OperationStream:
    operation_id: str
    kind: OperationKind
    target: str
    outbox: Outbox[OperationEvent]
    phase: OperationPhase = OperationPhase.QUEUED
    exit_status: int | None = None
    deploy_phase: DeployPhase | None = None
    summary: str | None = None
    error: str | None = None
    batch: BatchProgress | None = None
    detached: bool = False
    task: asyncio.Task[None] | None = None
    phase_tracker: PhaseTracker | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def finished(self) -> bool:
        return self.phase in (OperationPhase.DONE, OperationPhase.FAILED)

    def to_status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "operationId": self.operation_id,
            "kind": str(self.kind),
            "target": self.target,
            "phase": str(self.phase),
            "exitStatus": self.exit_status,
            "deployPhase": str(self.deploy_phase) if self.deploy_phase else None,
            "summary": self.summary,
            "error": self.error,
            "detached": self.detached,
            "createdAt": self.created_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
        if self.batch is not None:
            status["batch"] = {
                "currentIndex": self.batch.current_index,
                "total": self.batch.total,
                "items": [item.to_result() for item in self.batch.items],
            }
        return status


def image_refs(raw: object) -> list[str]:
    """Validate the ``images`` argument of a batch update."""
    if not isinstance(raw, list) or not raw:
        raise ValueError("Images array is required")
    refs = [str(ref).strip() for ref in raw]
    if any(not ref for ref in refs):
        raise ValueError("Image references must not be empty")
    return refs


class OperationStreamController:
    def __init__(
        self,
        engine: Engine,
        *,
        buffer_size: int = 512,
        history_limit: int = 100,
        pull_progress_interval: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._engine = engine
        self._buffer_size = buffer_size
        self._history_limit = history_limit
        self._pull_interval = pull_progress_interval
        self._clock = clock
        self._operations: OrderedDict[str, OperationStream] = OrderedDict()
        self._update_history: deque[dict[str, Any]] = deque(maxlen=history_limit)

    # -- registry --------------------------------------------------------------

    def get(self, operation_id: str) -> OperationStream | None:
        return self._operations.get(operation_id)

    def list_all(self) -> list[OperationStream]:
        return list(self._operations.values())

    def update_history(self) -> list[dict[str, Any]]:
        """Most recent image update records, newest first."""
        return list(self._update_history)

    def _prune(self) -> None:
        finished = [op_id for op_id, op in self._operations.items() if op.finished]
        for op_id in finished[: max(0, len(finished) - self._history_limit)]:
            del self._operations[op_id]

    # -- lifecycle ---------------------------------------------------------------

    def start(
        self,
        kind: OperationKind,
        target: str,
        args: Mapping[str, Any] | None = None,
    ) -> OperationStream:
        """Register and launch an operation. Must be called from the event loop.

        Raises ``ValueError`` for malformed batch arguments.
        """
        args = dict(args or {})
        stream = OperationStream(
            operation_id=uuid4().hex,
            kind=kind,
            target=target,
            outbox=Outbox(self._buffer_size),
        )
        runner: Callable[[OperationStream, dict[str, Any]], Awaitable[OperationEvent]]
        if kind is OperationKind.IMAGES_UPDATE:
            refs = image_refs(args.get("images"))
            args["images"] = refs
            items = [BatchItem(image=ref) for ref in refs]
            stream.batch = BatchProgress(total=len(refs), items=items)
            runner = self._run_batch
        elif kind is OperationKind.CONTAINER_UPDATE:
            stream.phase_tracker = PhaseTracker()
            runner = self._run_container_update
        elif kind is OperationKind.STACK_UPDATE:
            stream.phase_tracker = PhaseTracker()
            runner = self._run_stack_update
        else:
            stream.phase_tracker = PhaseTracker()
            runner = self._run_stack_action

        self._operations[stream.operation_id] = stream
        stream.phase = OperationPhase.RUNNING
        stream.task = asyncio.create_task(
            self._run(stream, runner, args), name=f"operation-{stream.operation_id}"
        )
        self._prune()
        _log.info("Operation %s started: %s %s", stream.operation_id, kind, target)
        return stream

    def detach(self, operation_id: str) -> None:
        """Stop delivering events for an operation; the operation keeps running."""
        stream = self._operations.get(operation_id)
        if stream is None or stream.detached:
            return
        stream.detached = True
        stream.outbox.close(drain=False)
        if not stream.finished:
            _log.info("Consumer detached from running operation %s", operation_id)

    async def wait(self, operation_id: str) -> OperationStream:
        stream = self._operations[operation_id]
        if stream.task is not None:
            await asyncio.wait([stream.task])
        return stream

    async def shutdown(self) -> None:
        tasks = [op.task for op in self._operations.values() if op.task and not op.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    async def _run(
        self,
        stream: OperationStream,
        runner: Callable[[OperationStream, dict[str, Any]], Awaitable[OperationEvent]],
        args: dict[str, Any],
    ) -> None:
        try:
            terminal = await runner(stream, args)
        except EngineError as exc:
            await self._fail(stream, str(exc), getattr(exc, "exit_code", None))
        except asyncio.CancelledError:
            await self._fail(stream, "Operation cancelled", None)
            raise
        except Exception as exc:
            _log.exception("Operation %s crashed", stream.operation_id)
            await self._fail(stream, str(exc) or type(exc).__name__, None)
        else:
            stream.phase = OperationPhase.DONE
            stream.finished_at = datetime.now(UTC)
            if isinstance(terminal, DoneEvent):
                stream.summary = terminal.data
            await self._emit(stream, terminal)
            _log.info(
                "Operation %s finished: %s", stream.operation_id, stream.summary or terminal.type
            )
        finally:
            stream.outbox.close()
            self._prune()

    async def _fail(self, stream: OperationStream, message: str, exit_code: int | None) -> None:
        stream.phase = OperationPhase.FAILED
        stream.error = message
        if exit_code is not None:
            stream.exit_status = exit_code
        stream.finished_at = datetime.now(UTC)
        _log.warning("Operation %s failed: %s", stream.operation_id, message)
        if not stream.outbox.closed:
            # Terminal events must not wait behind a stalled consumer.
            stream.outbox.offer(ErrorEvent(data=message), droppable=False)

    # -- event helpers -------------------------------------------------------------

    async def _emit(self, stream: OperationStream, event: OperationEvent) -> None:
        if stream.detached:
            return
        if isinstance(event, (DoneEvent, ErrorEvent, BatchCompleteEvent)):
            stream.outbox.offer(event, droppable=False)
            return
        await stream.outbox.put(event)

    async def _output(self, stream: OperationStream, name: StreamName, text: str) -> None:
        await self._emit(stream, OutputEvent(type=name, data=text))
        if stream.phase_tracker is None:
            return
        phase = stream.phase_tracker.observe(text)
        if phase is not None:
            stream.deploy_phase = phase
            await self._emit(stream, PhaseEvent(data=str(phase)))

    async def _compose(
        self,
        stack: str,
        args: Sequence[str],
        stream: OperationStream | None = None,
    ) -> int:
        """Run one compose action; stream its output when *stream* is given."""
        process = await self._engine.run_operation(stack, args)
        stderr: deque[str] = deque(maxlen=_STDERR_TAIL)
        try:
            async for line in process.lines():
                if line.stream == "stderr" and line.text.strip():
                    stderr.append(line.text)
                if stream is not None:
                    await self._output(stream, line.stream, line.text)
            code = await process.wait()
        except asyncio.CancelledError:
            await process.terminate()
            raise
        if stream is not None:
            stream.exit_status = code
        if code != 0:
            raise OperationFailedError(summarize_failure(code, "\n".join(stderr)), exit_code=code)
        return code

    # -- runners ---------------------------------------------------------------------

    async def _run_stack_action(
        self, stream: OperationStream, args: dict[str, Any]
    ) -> OperationEvent:
        compose_args, summary = _COMPOSE_ACTIONS[stream.kind]
        await self._compose(stream.target, compose_args, stream)
        return DoneEvent(data=summary)

    async def _run_stack_update(
        self, stream: OperationStream, args: dict[str, Any]
    ) -> OperationEvent:
        await self._output(stream, "stdout", "=== Pulling Latest Images ===")
        await self._compose(stream.target, ("pull",), stream)
        await self._output(stream, "stdout", "")
        await self._output(stream, "stdout", "=== Restarting Stack ===")
        await self._compose(stream.target, ("restart",), stream)
        await self._output(stream, "stdout", "")
        await self._output(stream, "stdout", "=== Cleaning Up Old Images ===")
        try:
            pruned = await self._engine.prune_dangling_images()
        except EngineUnavailableError:
            raise
        except EngineError as exc:
            _log.warning("Image cleanup after updating %s failed: %s", stream.target, exc)
            await self._output(
                stream, "stdout", "Could not clean up old images (they may still be in use)."
            )
        else:
            if pruned.removed:
                await self._output(
                    stream,
                    "stdout",
                    f"Removed {len(pruned.removed)} old image(s), "
                    f"reclaimed {format_bytes(pruned.reclaimed_bytes)}",
                )
            else:
                await self._output(stream, "stdout", "No old images to clean up.")
        return DoneEvent(data="Stack updated successfully")

    async def _run_container_update(
        self, stream: OperationStream, args: dict[str, Any]
    ) -> OperationEvent:
        image = await self._engine.container_image(stream.target)
        await self._output(stream, "stdout", f"Pulling latest image: {image}")
        tracker = PullProgressTracker(image, interval=self._pull_interval, clock=self._clock)
        async for event in self._engine.pull_image(image):
            await self._output(stream, "stdout", describe_pull_event(event))
            for progress in tracker.feed(event):
                await self._emit(stream, progress)
        final = tracker.finish()
        if final is not None:
            await self._emit(stream, final)

        if not tracker.updated:
            return DoneEvent(data="Container is already up to date. No restart needed.")
        await self._output(stream, "stdout", "")
        await self._output(stream, "stdout", "New image pulled. Restarting container...")
        await self._engine.restart_container(stream.target)
        return DoneEvent(data="Container updated and restarted successfully")

    async def _run_batch(self, stream: OperationStream, args: dict[str, Any]) -> OperationEvent:
        batch = stream.batch
        assert batch is not None
        restart = bool(args.get("restart_containers"))
        await self._emit(
            stream,
            BatchStartedEvent(
                total=batch.total, message=f"Starting update of {batch.total} image(s)"
            ),
        )
        for item in batch.items:
            current = batch.advance()
            await self._emit(
                stream,
                ItemProgressEvent(
                    current=current,
                    total=batch.total,
                    image=item.image,
                    status="pulling",
                    message=f"Pulling {item.image}...",
                ),
            )
            try:
                await self._update_image(stream, item, current, batch.total, restart)
            except EngineUnavailableError:
                raise
            except EngineError as exc:
                item.status = "failed"
                item.error = str(exc)
                _log.warning(
                    "Batch %s: update of %s failed: %s", stream.operation_id, item.image, exc
                )
                message = f"Failed to update {item.image}: {exc}"
            else:
                item.status = "completed"
                message = f"Updated {item.image}"
            self._record_update(item)
            await self._emit(
                stream,
                ItemProgressEvent(
                    current=current,
                    total=batch.total,
                    image=item.image,
                    status="completed" if item.status == "completed" else "failed",
                    message=message,
                ),
            )

        stream.summary = f"{batch.successful} of {batch.total} image(s) updated"
        return BatchCompleteEvent(
            total=batch.total,
            successful=batch.successful,
            failed=batch.failed,
            results=[item.to_result() for item in batch.items],
        )

    async def _update_image(
        self,
        stream: OperationStream,
        item: BatchItem,
        current: int,
        total: int,
        restart: bool,
    ) -> None:
        affected = await self._engine.containers_using_image(item.image)
        item.affected = len(affected)
        tracker = PullProgressTracker(
            item.image,
            current=current,
            total=total,
            interval=self._pull_interval,
            clock=self._clock,
        )
        async for event in self._engine.pull_image(item.image):
            for progress in tracker.feed(event):
                await self._emit(stream, progress)
        final = tracker.finish()
        if final is not None:
            await self._emit(stream, final)

        if not restart or not affected:
            return
        await self._emit(
            stream,
            PullProgressEvent(
                status="restarting",
                current=current,
                total=total,
                image=item.image,
                message=f"Restarting {len(affected)} container(s)...",
            ),
        )
        restarted_stacks: set[str] = set()
        for container in affected:
            try:
                if container.compose_project:
                    if container.compose_project not in restarted_stacks:
                        await self._compose(container.compose_project, ("restart",))
                        restarted_stacks.add(container.compose_project)
                    item.restarted.append(
                        {
                            "id": container.id,
                            "name": container.name,
                            "stack": container.compose_project,
                            "type": "stack",
                        }
                    )
                else:
                    await self._engine.restart_container(container.id)
                    item.restarted.append(
                        {"id": container.id, "name": container.name, "type": "container"}
                    )
            except EngineUnavailableError:
                raise
            except EngineError as exc:
                _log.warning("Failed to restart container %s: %s", container.name, exc)
                item.restarted.append(
                    {"id": container.id, "name": container.name, "error": str(exc)}
                )

    def _record_update(self, item: BatchItem) -> None:
        record = item.to_result()
        record["timestamp"] = datetime.now(UTC).isoformat()
        self._update_history.appendleft(record)
