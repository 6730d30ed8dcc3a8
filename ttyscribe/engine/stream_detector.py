"""Stream event detector: turns a raw terminal byte stream into triggers.

One detector per attached terminal instance. It keeps a cumulative,
size-capped buffer of everything the instance printed and emits
:class:`StreamTriggerEvent` values meaning "now is a good time to
re-extract the conversation":

- ``session_banner``  a CLI tool printed its startup banner
- ``screen_cleared``  clear-screen escape or an echoed ``/clear`` command
- ``enter_pressed``   the user submitted input (carriage return written)
- ``output_idle``     no output for ``idle_timeout_seconds``

Patterns are matched against the buffer, not the chunk, so an escape
sequence split across two reads still fires once the second half arrives.
"""
from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from ttyscribe.engine.extractors.base import strip_ansi
from ttyscribe.engine.models import StreamTriggerEvent, TriggerKind

if TYPE_CHECKING:
    from ttyscribe.engine.recorder import StreamRecorder

logger = logging.getLogger(__name__)

TriggerListener = Callable[[StreamTriggerEvent], None]


class StreamSource(Protocol):
    """Subset of a terminal stream source the detector subscribes to."""

    def on_data(self, listener: Callable[[str], None]) -> Callable[[], None]: ...

    def on_write(self, listener: Callable[[str], None]) -> Callable[[], None]: ...


@dataclass
class _Matcher:
    """One trigger pattern with its own scan position in the buffer."""
    kind: TriggerKind
    pattern: re.Pattern[str]
    provider: str | None = None
    # Match against ANSI-stripped text instead of raw bytes.
    plain: bool = False
    # Chars re-scanned from the previous tail so split sequences still match.
    lookbehind: int = 16
    offset: int = 0


def _default_matchers() -> list[_Matcher]:
    return [
        _Matcher(TriggerKind.SESSION_BANNER, re.compile(r"Claude Code"),
                 provider="claude", lookbehind=16),
        _Matcher(TriggerKind.SESSION_BANNER, re.compile(r"OpenAI Codex"),
                 provider="codex", lookbehind=16),
        _Matcher(TriggerKind.SESSION_BANNER,
                 re.compile(r"Google Gemini|Gemini CLI|\x1b\[38;2;71;150;228m"),
                 provider="gemini", lookbehind=24),
        _Matcher(TriggerKind.SCREEN_CLEARED, re.compile(r"\x1b\[[23]J|\x1bc"),
                 lookbehind=8),
        _Matcher(TriggerKind.SCREEN_CLEARED, re.compile(r">\s*/clear"),
                 plain=True, lookbehind=64),
    ]


class StreamEventDetector:
    """Watches one terminal instance's output and keystrokes for triggers."""

    def __init__(
        self,
        instance_id: str,
        *,
        idle_timeout_seconds: float = 0.3,
        max_buffer_chars: int = 2 * 1024 * 1024,
        loop: asyncio.AbstractEventLoop | None = None,
        recorder: StreamRecorder | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.idle_timeout_seconds = idle_timeout_seconds
        self.max_buffer_chars = max(1, max_buffer_chars)
        self._loop = loop
        self._recorder = recorder
        self._buffer = ""
        self._matchers = _default_matchers()
        self._listeners: dict[TriggerKind, list[TriggerListener]] = {
            kind: [] for kind in TriggerKind
        }
        self._source_unsubscribers: list[Callable[[], None]] = []
        self._idle_handle: asyncio.TimerHandle | None = None
        # Bumped on every reschedule; a queued callback with an old value is stale.
        self._idle_generation = 0
        self._last_activity: float | None = None
        self._destroyed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def buffered_output(self) -> str:
        return self._buffer

    def reset(self) -> None:
        """Drop buffered output; scan positions restart at zero."""
        self._buffer = ""
        for matcher in self._matchers:
            matcher.offset = 0

    def on(self, kind: TriggerKind, listener: TriggerListener) -> Callable[[], None]:
        """Subscribe to one trigger kind. Returns an idempotent unsubscribe."""
        bucket = self._listeners[TriggerKind(kind)]
        bucket.append(listener)

        def unsubscribe() -> None:
            if listener in bucket:
                bucket.remove(listener)

        return unsubscribe

    def attach_source(self, source: StreamSource) -> None:
        if self._destroyed:
            logger.debug("Detector %s destroyed, not attaching source", self.instance_id)
            return
        self._source_unsubscribers.append(source.on_data(self.ingest))
        self._source_unsubscribers.append(source.on_write(self.ingest_write))

    # ── Input ──

    def ingest(self, chunk: str) -> None:
        """Consume a chunk of terminal output."""
        if self._destroyed or not chunk:
            return
        if self._recorder is not None:
            self._recorder.write_chunk(chunk)

        self._buffer += chunk
        self._trim_buffer()
        self._mark_activity()

        for matcher in self._matchers:
            match = self._scan(matcher)
            if match is None:
                continue
            self._emit(StreamTriggerEvent(
                kind=matcher.kind,
                raw_match=match,
                provider=matcher.provider,
            ))
            if self._destroyed:
                return

        self._schedule_idle()

    def ingest_write(self, chunk: str) -> None:
        """Consume user keystrokes written to the terminal."""
        if self._destroyed or "\r" not in chunk:
            return
        self._mark_activity()
        self._emit(StreamTriggerEvent(kind=TriggerKind.ENTER_PRESSED, raw_match="\r"))
        if not self._destroyed:
            self._schedule_idle()

    def record_snapshot(self, kind: TriggerKind, snapshot: str) -> None:
        """Pass a reconciled snapshot to the recorder, if one is attached."""
        if self._recorder is None or not snapshot or not snapshot.strip():
            return
        self._recorder.write_snapshot(kind, snapshot)

    # ── Matching ──

    def _scan(self, matcher: _Matcher) -> str | None:
        start = matcher.offset
        if matcher.plain:
            window = strip_ansi(self._buffer[start:])
            match = matcher.pattern.search(window)
            if match is not None:
                # Stripped positions don't map back to the buffer; consume it all.
                matcher.offset = len(self._buffer)
                return match.group(0)
        else:
            match = matcher.pattern.search(self._buffer, start)
            if match is not None:
                matcher.offset = match.end()
                return match.group(0)
        matcher.offset = max(start, len(self._buffer) - matcher.lookbehind)
        return None

    def _trim_buffer(self) -> None:
        overflow = len(self._buffer) - self.max_buffer_chars
        if overflow <= 0:
            return
        self._buffer = self._buffer[overflow:]
        for matcher in self._matchers:
            matcher.offset = max(0, matcher.offset - overflow)

    # ── Idle timer ──

    def _get_loop(self) -> asyncio.AbstractEventLoop | None:
        if self._loop is not None:
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def _mark_activity(self) -> None:
        loop = self._get_loop()
        if loop is not None:
            self._last_activity = loop.time()

    def _schedule_idle(self) -> None:
        self._cancel_idle()
        if self.idle_timeout_seconds <= 0:
            return
        loop = self._get_loop()
        if loop is None:
            logger.debug(
                "Detector %s: no event loop, idle detection skipped", self.instance_id,
            )
            return
        self._idle_generation += 1
        self._idle_handle = loop.call_later(
            self.idle_timeout_seconds, self._fire_idle, self._idle_generation,
        )

    def _cancel_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _fire_idle(self, generation: int) -> None:
        if self._destroyed or generation != self._idle_generation:
            return
        self._idle_handle = None
        idle_for = None
        loop = self._get_loop()
        if loop is not None and self._last_activity is not None:
            idle_for = loop.time() - self._last_activity
        self._emit(StreamTriggerEvent(kind=TriggerKind.OUTPUT_IDLE, idle_for=idle_for))

    # ── Delivery ──

    def _emit(self, event: StreamTriggerEvent) -> None:
        for listener in list(self._listeners[event.kind]):
            if self._destroyed:
                return
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Detector %s: %s listener failed", self.instance_id, event.kind.value,
                )

    def destroy(self) -> None:
        """Stop everything. Idempotent; no trigger fires afterwards."""
        if self._destroyed:
            return
        self._destroyed = True
        self._idle_generation += 1
        self._cancel_idle()
        while self._source_unsubscribers:
            unsubscribe = self._source_unsubscribers.pop()
            try:
                unsubscribe()
            except Exception:
                logger.debug(
                    "Detector %s: source unsubscribe failed",
                    self.instance_id, exc_info=True,
                )
        for bucket in self._listeners.values():
            bucket.clear()
        if self._recorder is not None:
            self._recorder.close()
            self._recorder = None
        logger.debug("Detector %s destroyed", self.instance_id)

    # Pipeline protocol used by TerminalChatSession.attach()
    close = destroy
