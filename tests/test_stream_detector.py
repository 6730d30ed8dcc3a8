"""Stream event detector: banner/clear/enter/idle triggers and teardown."""

from __future__ import annotations

import asyncio

import pytest

from ttyscribe.engine.models import TriggerKind
from ttyscribe.engine.stream_detector import StreamEventDetector


class FakeSource:
    def __init__(self) -> None:
        self.data_listeners = []
        self.write_listeners = []

    def on_data(self, listener):
        self.data_listeners.append(listener)
        return lambda: self.data_listeners.remove(listener)

    def on_write(self, listener):
        self.write_listeners.append(listener)
        return lambda: self.write_listeners.remove(listener)

    def emit_data(self, chunk: str) -> None:
        for listener in list(self.data_listeners):
            listener(chunk)

    def emit_write(self, chunk: str) -> None:
        for listener in list(self.write_listeners):
            listener(chunk)


class FakeRecorder:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.snapshots: list[tuple[TriggerKind, str]] = []
        self.closed = 0

    def write_chunk(self, chunk: str) -> None:
        self.chunks.append(chunk)

    def write_snapshot(self, kind, snapshot: str) -> None:
        self.snapshots.append((kind, snapshot))

    def close(self) -> None:
        self.closed += 1


def _collect(detector: StreamEventDetector, *kinds: TriggerKind) -> list:
    events: list = []
    for kind in kinds or tuple(TriggerKind):
        detector.on(kind, events.append)
    return events


def test_banner_fires_once_with_provider():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.SESSION_BANNER)

    detector.ingest("\x1b[1mClaude Code\x1b[0m v2.0\r\n")
    detector.ingest("more output\r\n")

    assert len(events) == 1
    assert events[0].provider == "claude"
    assert events[0].raw_match == "Claude Code"
    # Banner does not reset the buffer.
    assert "more output" in detector.buffered_output


@pytest.mark.parametrize(
    ("chunk", "provider"),
    [
        (">_ OpenAI Codex (v0.46.0)", "codex"),
        ("Gemini CLI v0.9", "gemini"),
        ("\x1b[38;2;71;150;228m███", "gemini"),
    ],
)
def test_banner_providers(chunk, provider):
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.SESSION_BANNER)
    detector.ingest(chunk)
    assert [e.provider for e in events] == [provider]


def test_clear_sequence_split_across_chunks_fires_once():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.SCREEN_CLEARED)

    detector.ingest("previous screen\x1b[2")
    assert events == []
    detector.ingest("Jnew screen")
    assert len(events) == 1
    detector.ingest("still the new screen")
    assert len(events) == 1


def test_each_clear_occurrence_fires():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.SCREEN_CLEARED)
    detector.ingest("\x1b[2J")
    detector.ingest("text\x1b[3J")
    detector.ingest("\x1bc")
    assert len(events) == 3


def test_clear_command_in_stripped_text():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.SCREEN_CLEARED)
    detector.ingest("\x1b[48;2;55;55;55m> /cl")
    detector.ingest("ear\x1b[0m\r\n")
    assert len(events) == 1


def test_enter_pressed_only_on_carriage_return():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.ENTER_PRESSED)
    detector.ingest_write("ls")
    assert events == []
    detector.ingest_write("\r")
    assert len(events) == 1


def test_listener_error_does_not_stop_delivery():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    seen = []

    def bad(event):
        raise RuntimeError("listener bug")

    detector.on(TriggerKind.ENTER_PRESSED, bad)
    detector.on(TriggerKind.ENTER_PRESSED, seen.append)
    detector.ingest_write("\r")
    assert len(seen) == 1


def test_unsubscribe_is_idempotent():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    seen = []
    unsubscribe = detector.on(TriggerKind.ENTER_PRESSED, seen.append)
    unsubscribe()
    unsubscribe()
    detector.ingest_write("\r")
    assert seen == []


def test_buffer_is_capped_and_matching_continues():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0, max_buffer_chars=10)
    events = _collect(detector, TriggerKind.SCREEN_CLEARED)
    detector.ingest("0123456789abcdefghij")
    assert detector.buffered_output == "abcdefghij"
    detector.ingest("\x1b[2J")
    assert len(events) == 1
    assert len(detector.buffered_output) == 10


def test_reset_clears_buffer():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    detector.ingest("hello")
    detector.reset()
    assert detector.buffered_output == ""


def test_destroy_then_ingest_fires_nothing():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector)
    detector.destroy()
    detector.ingest("Claude Code \x1b[2J")
    detector.ingest_write("\r")
    assert events == []
    detector.destroy()
    assert detector.destroyed


def test_source_subscription_and_teardown():
    source = FakeSource()
    recorder = FakeRecorder()
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0, recorder=recorder)
    events = _collect(detector)
    detector.attach_source(source)

    source.emit_data("\x1b[2J")
    source.emit_write("\r")
    assert [e.kind for e in events] == [TriggerKind.SCREEN_CLEARED, TriggerKind.ENTER_PRESSED]
    assert recorder.chunks == ["\x1b[2J"]

    detector.record_snapshot(TriggerKind.ENTER_PRESSED, "screen")
    detector.record_snapshot(TriggerKind.ENTER_PRESSED, "   ")
    assert recorder.snapshots == [(TriggerKind.ENTER_PRESSED, "screen")]

    detector.destroy()
    assert source.data_listeners == []
    assert source.write_listeners == []
    assert recorder.closed == 1


def test_ingest_without_event_loop_skips_idle_only():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0.01)
    events = _collect(detector, TriggerKind.SCREEN_CLEARED)
    detector.ingest("\x1b[2J")
    assert len(events) == 1


@pytest.mark.asyncio
async def test_idle_fires_after_quiet_period():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0.02)
    events = _collect(detector, TriggerKind.OUTPUT_IDLE)

    detector.ingest("working...")
    await asyncio.sleep(0.1)

    assert len(events) == 1
    assert events[0].idle_for is not None
    assert events[0].idle_for > 0.01
    detector.destroy()


@pytest.mark.asyncio
async def test_idle_countdown_restarts_on_activity():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0.05)
    events = _collect(detector, TriggerKind.OUTPUT_IDLE)

    for _ in range(4):
        detector.ingest("tick")
        await asyncio.sleep(0.02)
    assert events == []

    await asyncio.sleep(0.1)
    assert len(events) == 1
    detector.destroy()


@pytest.mark.asyncio
async def test_idle_disabled_with_zero_timeout():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0)
    events = _collect(detector, TriggerKind.OUTPUT_IDLE)
    detector.ingest("output")
    await asyncio.sleep(0.05)
    assert events == []


@pytest.mark.asyncio
async def test_destroy_cancels_pending_idle():
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0.02)
    events = _collect(detector, TriggerKind.OUTPUT_IDLE)
    detector.ingest("output")
    generation = detector._idle_generation
    detector.destroy()

    # A callback already queued by the loop must not fire either.
    detector._fire_idle(generation)
    await asyncio.sleep(0.06)
    assert events == []


@pytest.mark.asyncio
async def test_explicit_loop_is_used():
    loop = asyncio.get_running_loop()
    detector = StreamEventDetector("pty-1", idle_timeout_seconds=0.01, loop=loop)
    events = _collect(detector, TriggerKind.OUTPUT_IDLE)
    detector.ingest_write("\r")
    await asyncio.sleep(0.05)
    assert len(events) == 1
    detector.destroy()
