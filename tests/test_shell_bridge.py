"""Tests for the Shell Session Bridge state machine."""

from __future__ import annotations

import pytest
from conftest import FakeEngine, FakeExecChannel, drain, take

from dockpilot.errors import ContainerNotRunningError, EngineUnavailableError, ShellStateError
from dockpilot.streaming.events import ShellErrorEvent, ShellExitEvent, ShellStartedEvent
from dockpilot.streaming.shell_bridge import ShellBridge, ShellSession, ShellState


@pytest.mark.asyncio()
async def test_start_attaches_and_reports_shell(engine: FakeEngine) -> None:
    engine.exec_factory = lambda: FakeExecChannel(shell="/bin/bash")
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 120, 40)

    assert session.state is ShellState.ATTACHED
    assert session.shell == "/bin/bash"
    assert engine.channels[0].resizes == [(120, 40)]
    (started,) = await take(session.outbox, 1)
    assert isinstance(started, ShellStartedEvent)
    assert started.to_wire()["shell"] == "/bin/bash"
    assert bridge.session_for("conn-a") is session


@pytest.mark.asyncio()
async def test_terminal_output_is_forwarded_as_bytes(engine: FakeEngine) -> None:
    engine.exec_factory = lambda: FakeExecChannel(output=[b"$ ", b"\x1b[32mok\x1b[0m"])
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    items = await take(session.outbox, 3)
    assert items[1:] == [b"$ ", b"\x1b[32mok\x1b[0m"]


@pytest.mark.asyncio()
async def test_input_and_resize_reach_the_exec(engine: FakeEngine) -> None:
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    await bridge.input(session.session_id, b"ls -la\r")
    await bridge.resize(session.session_id, 100, 30)

    channel = engine.channels[0]
    assert channel.written == [b"ls -la\r"]
    assert channel.resizes[-1] == (100, 30)
    assert (session.cols, session.rows) == (100, 30)


@pytest.mark.asyncio()
async def test_close_then_input_is_rejected(engine: FakeEngine) -> None:
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    await bridge.close(session.session_id)
    assert session.state is ShellState.CLOSED
    assert engine.channels[0].closed

    with pytest.raises(ShellStateError, match="not attached"):
        await bridge.input(session.session_id, b"echo hi\r")
    assert engine.channels[0].written == []

    events = await drain(session.outbox)
    assert isinstance(events[-1], ShellExitEvent)
    assert events[-1].exit_code == 0


@pytest.mark.asyncio()
async def test_close_is_idempotent(engine: FakeEngine) -> None:
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    await bridge.close(session.session_id)
    await bridge.close(session.session_id)
    assert engine.channels[0].close_calls == 1


@pytest.mark.asyncio()
async def test_second_start_on_live_session_is_rejected(engine: FakeEngine) -> None:
    bridge = ShellBridge(engine)
    await bridge.start("conn-a", "c1", 80, 24)

    with pytest.raises(ShellStateError, match="already active"):
        await bridge.start("conn-a", "c2", 80, 24)
    assert engine.calls["exec_shell"] == 1


@pytest.mark.asyncio()
async def test_start_after_close_replaces_session(engine: FakeEngine) -> None:
    bridge = ShellBridge(engine)
    first = await bridge.start("conn-a", "c1", 80, 24)
    await bridge.close(first.session_id)

    second = await bridge.start("conn-a", "c1", 80, 24)
    assert second.session_id != first.session_id
    assert bridge.session_for("conn-a") is second
    with pytest.raises(ShellStateError, match="Unknown shell session"):
        bridge.get(first.session_id)


@pytest.mark.asyncio()
async def test_engine_refusal_fails_session_without_raising(engine: FakeEngine) -> None:
    engine.exec_errors["stopped"] = ContainerNotRunningError("stopped")
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "stopped", 80, 24)

    assert session.state is ShellState.FAILED
    events = await drain(session.outbox)
    assert len(events) == 1
    assert isinstance(events[0], ShellErrorEvent)
    assert events[0].message == "Container is not running"


@pytest.mark.asyncio()
async def test_remote_exit_closes_session(engine: FakeEngine) -> None:
    engine.exec_factory = lambda: FakeExecChannel(output=[b"bye\r\n"], exit_code=3, eof=True)
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    items = await drain(session.outbox)
    assert items[1] == b"bye\r\n"
    assert isinstance(items[-1], ShellExitEvent)
    assert items[-1].exit_code == 3
    assert session.state is ShellState.CLOSED


@pytest.mark.asyncio()
async def test_read_failure_marks_session_failed(engine: FakeEngine) -> None:
    channel = FakeExecChannel()
    channel.fail(EngineUnavailableError("socket closed"))
    engine.exec_factory = lambda: channel
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    items = await drain(session.outbox)
    assert isinstance(items[-1], ShellErrorEvent)
    assert items[-1].message == "socket closed"
    assert session.state is ShellState.FAILED
    assert channel.closed


@pytest.mark.asyncio()
async def test_remote_exit_still_reports_when_close_fails(engine: FakeEngine) -> None:
    channel = FakeExecChannel(eof=True)
    channel.close_error = EngineUnavailableError("inspect failed")
    engine.exec_factory = lambda: channel
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    items = await drain(session.outbox)
    assert isinstance(items[-1], ShellExitEvent)
    assert items[-1].exit_code is None
    assert session.state is ShellState.CLOSED


@pytest.mark.asyncio()
async def test_unexpected_read_error_fails_session(engine: FakeEngine) -> None:
    channel = FakeExecChannel()
    channel.fail(ValueError("bad frame"))
    engine.exec_factory = lambda: channel
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    items = await drain(session.outbox)
    assert isinstance(items[-1], ShellErrorEvent)
    assert items[-1].message == "Shell error: bad frame"
    assert session.state is ShellState.FAILED
    assert channel.closed


@pytest.mark.asyncio()
async def test_release_connection_closes_and_forgets(engine: FakeEngine) -> None:
    bridge = ShellBridge(engine)
    session = await bridge.start("conn-a", "c1", 80, 24)

    await bridge.release_connection("conn-a")
    assert session.state is ShellState.CLOSED
    assert bridge.session_for("conn-a") is None
    assert bridge.snapshot() == []


def test_illegal_transition_raises() -> None:
    session = ShellSession(
        session_id="s1",
        client_connection_id="conn-a",
        container_id="c1",
        cols=80,
        rows=24,
        outbox=None,  # type: ignore[arg-type]
    )
    with pytest.raises(ShellStateError):
        session.transition(ShellState.ATTACHED)
