"""Orchestrator: trigger pipeline, attachment bookkeeping, cold-start recovery."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ttyscribe.adapters.event_bus import EventBus
from ttyscribe.adapters.events import SessionUpdated, TerminalExited, TriggerFired
from ttyscribe.adapters.orchestrator import Orchestrator, SnapshotContext
from ttyscribe.engine.config import EngineConfig
from ttyscribe.engine.errors import (
    SessionNotFoundError,
    SessionTerminatedError,
    StaleAttachmentError,
)
from ttyscribe.engine.extractors import claude_extractor
from ttyscribe.engine.models import StreamTriggerEvent, TriggerKind
from ttyscribe.engine.recorder import read_recording
from ttyscribe.shared.models.message import ConversationMessage, MessageRole
from ttyscribe.shared.models.session import ConversationSession, SessionStatus


class FakeTerminal:
    """In-memory stand-in for a live terminal instance."""

    def __init__(self, instance_id: str) -> None:
        self.id = instance_id
        self.data_listeners = []
        self.write_listeners = []
        self.killed = False

    def on_data(self, listener):
        self.data_listeners.append(listener)
        return lambda: self.data_listeners.remove(listener)

    def on_write(self, listener):
        self.write_listeners.append(listener)
        return lambda: self.write_listeners.remove(listener)

    def write(self, text: str) -> None:
        for listener in list(self.write_listeners):
            listener(text)

    def resize(self, cols: int, rows: int) -> None:
        pass

    def kill(self) -> None:
        self.killed = True

    def print(self, chunk: str) -> None:
        for listener in list(self.data_listeners):
            listener(chunk)


class ScreenProvider:
    """Snapshot provider returning a settable screen per instance."""

    def __init__(self) -> None:
        self.screens: dict[str, str | None] = {}
        self.calls: list[SnapshotContext] = []

    def __call__(self, context: SnapshotContext) -> str | None:
        self.calls.append(context)
        return self.screens.get(context.instance_id)


def _config(**overrides) -> EngineConfig:
    overrides.setdefault("idle_timeout_seconds", 0)
    return EngineConfig(**overrides)


def _enter() -> StreamTriggerEvent:
    return StreamTriggerEvent(kind=TriggerKind.ENTER_PRESSED)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_register_and_lookup():
    orch = Orchestrator(_config())
    chat = orch.register_session(ConversationSession(session_id="s1", model_id="cli/claude"))
    assert orch.get_session("s1") is chat
    assert chat.extractor is claude_extractor.extract
    with pytest.raises(SessionNotFoundError):
        orch.get_session("missing")
    with pytest.raises(ValueError):
        orch.register_session(ConversationSession(session_id="s1"))


def test_attach_binds_instance():
    orch = Orchestrator(_config())
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", working_directory="/tmp", source=term)

    assert chat.status is SessionStatus.ACTIVE
    assert chat.attached_instance_id == "pty-1"
    assert orch.find_session_by_instance("pty-1") is chat
    assert len(term.data_listeners) == 1
    assert len(term.write_listeners) == 1


def test_instance_cannot_serve_two_sessions():
    orch = Orchestrator(_config())
    term = FakeTerminal("pty-1")
    orch.create_session("cli/unknown", source=term)
    other = orch.create_session("cli/unknown")
    with pytest.raises(ValueError):
        orch.attach(other.id, term)


@pytest.mark.asyncio
async def test_trigger_uses_provider_snapshot():
    provider = ScreenProvider()
    orch = Orchestrator(_config(), snapshot_provider=provider)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    provider.screens["pty-1"] = "> hello\nhi there\n"
    term.write("hello\r")
    await _settle()

    assert [(m.role, m.content) for m in chat.messages] == [
        (MessageRole.USER, "hello"),
        (MessageRole.ASSISTANT, "hi there"),
    ]
    assert provider.calls[0] == SnapshotContext(chat.id, "pty-1", TriggerKind.ENTER_PRESSED)


@pytest.mark.asyncio
async def test_falls_back_to_detector_buffer():
    orch = Orchestrator(_config(), snapshot_provider=ScreenProvider())
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    term.print("> build\n")
    assert await orch.handle_trigger(chat.id, _enter()) is True
    assert [m.content for m in chat.messages] == ["build"]


@pytest.mark.asyncio
async def test_identical_snapshot_is_skipped():
    provider = ScreenProvider()
    orch = Orchestrator(_config(), snapshot_provider=provider)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)
    changes = []
    orch.subscribe(changes.append)

    provider.screens["pty-1"] = "> build\n"
    assert await orch.handle_trigger(chat.id, _enter()) is True
    count = len(changes)
    assert await orch.handle_trigger(chat.id, _enter()) is False
    assert len(changes) == count
    assert len(chat.messages) == 1


@pytest.mark.asyncio
async def test_slow_provider_times_out_to_buffer():
    async def slow(context):
        await asyncio.sleep(1)
        return "> never\n"

    orch = Orchestrator(_config(snapshot_timeout_seconds=0.01), snapshot_provider=slow)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)
    term.print("> from buffer\n")

    assert await orch.handle_trigger(chat.id, _enter()) is True
    assert [m.content for m in chat.messages] == ["from buffer"]


@pytest.mark.asyncio
async def test_failing_provider_falls_back():
    def broken(context):
        raise RuntimeError("terminal emulator gone")

    orch = Orchestrator(_config(), snapshot_provider=broken)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)
    term.print("> still works\n")

    assert await orch.handle_trigger(chat.id, _enter()) is True
    assert [m.content for m in chat.messages] == ["still works"]


@pytest.mark.asyncio
async def test_triggers_during_refresh_are_coalesced():
    release = asyncio.Event()
    calls = []

    async def gated(context):
        calls.append(context.trigger_kind)
        await release.wait()
        return f"> turn {len(calls)}\n"

    orch = Orchestrator(_config(snapshot_timeout_seconds=5), snapshot_provider=gated)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    first = asyncio.create_task(orch.handle_trigger(chat.id, _enter()))
    await _settle()
    assert calls == [TriggerKind.ENTER_PRESSED]

    idle = StreamTriggerEvent(kind=TriggerKind.OUTPUT_IDLE)
    for _ in range(3):
        assert await orch.handle_trigger(chat.id, idle) is False

    release.set()
    assert await first is True
    # One initial refresh plus exactly one coalesced follow-up.
    assert calls == [TriggerKind.ENTER_PRESSED, TriggerKind.OUTPUT_IDLE]
    assert [m.content for m in chat.messages] == ["turn 1", "turn 2"]


@pytest.mark.asyncio
async def test_detach_during_refresh_drops_result():
    release = asyncio.Event()

    async def gated(context):
        await release.wait()
        return "> late\n"

    orch = Orchestrator(_config(snapshot_timeout_seconds=5), snapshot_provider=gated)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    task = asyncio.create_task(orch.handle_trigger(chat.id, _enter()))
    await _settle()
    orch.detach(chat.id)
    release.set()

    assert await task is False
    assert chat.messages == ()
    assert chat.status is SessionStatus.EXITED
    assert term.data_listeners == []


@pytest.mark.asyncio
async def test_trigger_for_unattached_session_is_dropped():
    orch = Orchestrator(_config())
    chat = orch.create_session("cli/unknown")
    assert await orch.handle_trigger(chat.id, _enter()) is False
    with pytest.raises(SessionNotFoundError):
        await orch.handle_trigger("missing", _enter())


@pytest.mark.asyncio
async def test_banner_switches_extractor_for_unknown_model():
    orch = Orchestrator(_config())
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    term.print("✻ Welcome to Claude Code!\n")
    await _settle()

    assert chat.session.metadata["detected_provider"] == "claude"
    assert chat.extractor is claude_extractor.extract


def test_process_exit_moves_session_to_exited():
    bus = EventBus()
    orch = Orchestrator(_config(), event_bus=bus)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    assert orch.handle_process_exit("pty-1", exit_code=0) is True
    assert chat.status is SessionStatus.EXITED
    assert chat.attached_instance_id is None
    assert term.data_listeners == []
    assert orch.find_session_by_instance("pty-1") is None
    assert orch.handle_process_exit("pty-unknown", exit_code=1) is False

    events = []
    while not bus._queue.empty():
        events.append(bus._queue.get_nowait())
    assert any(isinstance(e, TerminalExited) and e.exit_code == 0 for e in events)


def test_restart_replaces_pipeline_and_kills_old_instance():
    orch = Orchestrator(_config())
    old, new = FakeTerminal("pty-1"), FakeTerminal("pty-2")
    chat = orch.create_session("cli/unknown", source=old)

    orch.restart(chat.id, new)

    assert old.killed
    assert old.data_listeners == []
    assert len(new.data_listeners) == 1
    assert chat.attached_instance_id == "pty-2"
    assert orch.find_session_by_instance("pty-2") is chat
    assert orch.find_session_by_instance("pty-1") is None
    assert chat.messages[-1].content == "cli:restart"


def test_terminate_optionally_kills_instance():
    orch = Orchestrator(_config())
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    assert orch.terminate(chat.id, kill=True) is True
    assert term.killed
    assert chat.status is SessionStatus.TERMINATED
    with pytest.raises(SessionTerminatedError):
        orch.attach(chat.id, FakeTerminal("pty-2"))


def test_reconcile_with_live_instances():
    live = {"pty-alive": FakeTerminal("pty-alive")}
    orch = Orchestrator(_config(), instance_lookup=live.get)
    gone = orch.register_session(ConversationSession(
        session_id="gone", status=SessionStatus.ACTIVE, attached_instance_id="pty-gone",
    ))
    alive = orch.register_session(ConversationSession(
        session_id="alive", status=SessionStatus.ACTIVE, attached_instance_id="pty-alive",
    ))
    idle = orch.register_session(ConversationSession(session_id="idle"))

    cleared = orch.reconcile_with_live_instances(["pty-alive"])

    assert cleared == ["gone"]
    assert gone.status is SessionStatus.EXITED
    assert gone.attached_instance_id is None
    assert alive.status is SessionStatus.ACTIVE
    assert orch.find_session_by_instance("pty-alive") is alive
    assert len(live["pty-alive"].data_listeners) == 1
    assert idle.status is SessionStatus.EXITED


def test_resume_raises_for_missing_instance():
    orch = Orchestrator(_config(), instance_lookup=lambda instance_id: None)
    orch.register_session(ConversationSession(
        session_id="s1", status=SessionStatus.ACTIVE, attached_instance_id="pty-9",
    ))
    with pytest.raises(StaleAttachmentError) as exc_info:
        orch.resume("s1")
    assert exc_info.value.instance_id == "pty-9"


@pytest.mark.asyncio
async def test_reloaded_sessions_resume_or_go_stale():
    saved = []
    for session_id, instance_id in (("alive", "pty-alive"), ("gone", "pty-gone")):
        session = ConversationSession(
            session_id=session_id,
            status=SessionStatus.ACTIVE,
            attached_instance_id=instance_id,
        )
        session.messages = [
            ConversationMessage(role=MessageRole.USER, content="hello"),
            ConversationMessage(role=MessageRole.ASSISTANT, content="world"),
        ]
        saved.append(json.dumps(session.to_dict()))

    live = {"pty-alive": FakeTerminal("pty-alive")}
    provider = ScreenProvider()
    orch = Orchestrator(_config(), snapshot_provider=provider, instance_lookup=live.get)
    alive, gone = (
        orch.register_session(ConversationSession.from_dict(json.loads(raw)))
        for raw in saved
    )
    assert alive.status is SessionStatus.ACTIVE
    assert alive.attached_instance_id == "pty-alive"

    cleared = orch.reconcile_with_live_instances(list(live))

    assert cleared == ["gone"]
    assert gone.status is SessionStatus.EXITED
    assert gone.attached_instance_id is None
    assert gone.session.metadata["stale_instance_id"] == "pty-gone"
    assert [m.content for m in gone.messages] == ["hello", "world"]
    assert orch.find_session_by_instance("pty-alive") is alive
    assert len(live["pty-alive"].data_listeners) == 1

    # The resumed pipeline folds new screens into the restored history.
    provider.screens["pty-alive"] = "> hello\n"
    await orch.handle_trigger(alive.id, _enter())
    assert [m.content for m in alive.messages] == ["hello", "world"]

    # Reconciling again is a no-op.
    assert orch.reconcile_with_live_instances(list(live)) == []


def test_remove_session_detaches_and_stops_forwarding():
    orch = Orchestrator(_config())
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)
    seen = []
    orch.subscribe(seen.append)

    assert orch.remove_session(chat.id) is chat

    assert chat.status is SessionStatus.EXITED
    assert term.data_listeners == []
    assert orch.find_session_by_instance("pty-1") is None
    assert orch.sessions == []
    with pytest.raises(SessionNotFoundError):
        orch.get_session(chat.id)
    with pytest.raises(SessionNotFoundError):
        orch.remove_session(chat.id)

    forwarded = len(seen)
    chat.update_from_snapshot("> later\n")
    assert len(seen) == forwarded
    # The id can be registered again.
    orch.register_session(ConversationSession(session_id=chat.id))


@pytest.mark.asyncio
async def test_changes_are_published_to_event_bus():
    bus = EventBus()
    provider = ScreenProvider()
    orch = Orchestrator(_config(), snapshot_provider=provider, event_bus=bus)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", source=term)

    provider.screens["pty-1"] = "> hi\n"
    term.write("\r")
    await _settle()

    events = []
    while not bus._queue.empty():
        events.append(bus._queue.get_nowait())
    updates = [e for e in events if isinstance(e, SessionUpdated)]
    assert any(u.update_type == "message_added" and u.message["content"] == "hi" for u in updates)
    assert all(u.session_id == chat.id for u in updates)
    assert any(isinstance(e, TriggerFired) and e.kind == "enter_pressed" for e in events)


@pytest.mark.asyncio
async def test_recording_writes_chunks_and_snapshots(tmp_path):
    config = _config(recording_enabled=True, recording_dir=str(tmp_path))
    orch = Orchestrator(config)
    term = FakeTerminal("pty-1")
    chat = orch.create_session("cli/unknown", working_directory="/work/repo", source=term)

    term.print("> hello\n")
    await orch.handle_trigger(chat.id, _enter())
    orch.detach(chat.id)

    [path] = list((tmp_path / chat.id).glob("*-pty-1.ndjson"))
    entries = list(read_recording(path))
    types = [e["type"] for e in entries]
    assert types[0] == "meta"
    assert entries[0]["cwd"] == "/work/repo"
    assert entries[0]["instanceId"] == "pty-1"
    assert "chunk" in types
    assert types[-1] == "info"
    [snapshot] = [e for e in entries if e["type"] == "snapshot"]
    assert snapshot["text"] == "> hello\n"
    assert snapshot["trigger"] == "enter_pressed"


@pytest.mark.asyncio
async def test_shutdown_detaches_everything():
    orch = Orchestrator(_config())
    terms = [FakeTerminal(f"pty-{i}") for i in range(3)]
    chats = [orch.create_session("cli/unknown", source=t) for t in terms]

    await orch.shutdown()

    assert all(c.status is SessionStatus.EXITED for c in chats)
    assert all(t.data_listeners == [] for t in terms)


@pytest.mark.asyncio
async def test_async_provider_is_awaited_with_context():
    provider = AsyncMock(return_value="> hi\n")
    orch = Orchestrator(_config(), snapshot_provider=provider)
    chat = orch.create_session("cli/unknown", source=FakeTerminal("pty-1"))

    assert await orch.handle_trigger(chat.id, _enter()) is True
    provider.assert_awaited_once_with(
        SnapshotContext(chat.id, "pty-1", TriggerKind.ENTER_PRESSED)
    )


@pytest.mark.asyncio
async def test_extractor_failure_reaches_log_sink():
    sink = MagicMock()
    orch = Orchestrator(
        _config(), snapshot_provider=lambda context: "> hi\n", log_sink=sink,
    )
    chat = orch.create_session("cli/unknown", source=FakeTerminal("pty-1"))
    chat.extractor = MagicMock(side_effect=RuntimeError("bad screen"))

    assert await orch.handle_trigger(chat.id, _enter()) is False
    sink.assert_called_once()
    session_id, message = sink.call_args.args
    assert session_id == chat.id
    assert "bad screen" in message
    assert chat.messages == ()


def test_restart_survives_kill_failure():
    orch = Orchestrator(_config())
    old = FakeTerminal("pty-1")
    old.kill = MagicMock(side_effect=OSError("no such process"))
    chat = orch.create_session("cli/unknown", source=old)

    orch.restart(chat.id, FakeTerminal("pty-2"))

    old.kill.assert_called_once_with()
    assert chat.attached_instance_id == "pty-2"
