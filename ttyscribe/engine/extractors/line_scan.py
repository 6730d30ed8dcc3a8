"""Stateful line scanner shared by the tool-specific extractors.

Walks a raw snapshot top to bottom with a three-state machine::

    IDLE ──user start──────> IN_USER_FRAME ──(rejected line)──┐
      │                                                      │
      └──assistant start──> IN_ASSISTANT_RUN ──(rejected)────┤
                                                             v
                                    flush run, re-examine line in IDLE

A run handler that does not accept a line flushes its run and hands the
same line back for one more pass in IDLE. IDLE consumes every line, so
each input line is examined at most twice.

Lifecycle boundaries are checked before the state handlers in every
state and produce ``system`` fragments:

- ``cli:start``         session banner (also leaves shell mode)
- ``cli:screenRefresh`` ``/clear`` command
- ``cli:interrupted``   interrupt / error glyph
- ``cli:exit``          first shell prompt after the tool exits, followed
                        by one ``shell:<command>`` fragment per command line
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from ttyscribe.engine.extractors.base import RunBuffer, split_lines, strip_ansi
from ttyscribe.engine.models import Fragment
from ttyscribe.shared.models.message import MessageRole

SYSTEM_START = "cli:start"
SYSTEM_SCREEN_REFRESH = "cli:screenRefresh"
SYSTEM_INTERRUPTED = "cli:interrupted"
SYSTEM_EXIT = "cli:exit"
SHELL_PREFIX = "shell:"

# user@host ~/dir % cmd  |  user@host:~/dir$ cmd  |  (venv) user@host ~ $
SHELL_PROMPT_RE = re.compile(
    r"^(?:\([^)]*\)\s*)?[\w.-]+@[\w.-]+[\s:]+[~/][^%$#]*?\s*[%$#](?:\s+(?P<command>.*))?$"
)


class ScanState(Enum):
    IDLE = "idle"
    IN_USER_FRAME = "in_user_frame"
    IN_ASSISTANT_RUN = "in_assistant_run"


@dataclass(frozen=True)
class LinePattern:
    """A regex tested against either the raw line or its ANSI-stripped text."""
    regex: re.Pattern[str]
    plain: bool = False

    def matches(self, raw: str, plain: str) -> bool:
        return self.regex.search(plain if self.plain else raw) is not None


def raw(pattern: str) -> LinePattern:
    return LinePattern(re.compile(pattern))


def plain(pattern: str) -> LinePattern:
    return LinePattern(re.compile(pattern), plain=True)


def _any(patterns: tuple[LinePattern, ...], raw_line: str, plain_line: str) -> bool:
    return any(p.matches(raw_line, plain_line) for p in patterns)


@dataclass(frozen=True)
class LineScanRules:
    """Visual conventions of one CLI tool."""
    name: str
    user_start: tuple[LinePattern, ...]
    user_continuation: tuple[LinePattern, ...]
    assistant_start: tuple[LinePattern, ...]
    # Removed from the (stripped) first line of a run.
    user_marker: re.Pattern[str]
    assistant_marker: re.Pattern[str]
    banner: tuple[LinePattern, ...] = ()
    clear_command: tuple[LinePattern, ...] = ()
    interrupt: tuple[LinePattern, ...] = ()
    bottom_status: tuple[LinePattern, ...] = ()
    skip: tuple[LinePattern, ...] = ()
    ide_selection_start: re.Pattern[str] | None = None
    ide_selection_end: re.Pattern[str] | None = None
    # Removed from user continuation lines (e.g. a repeated input bar).
    continuation_marker: re.Pattern[str] | None = None
    # Gutter width stripped from continuation lines.
    continuation_indent: int = 2
    # Removed from the end of user lines (e.g. a right-hand box border).
    user_trailer: re.Pattern[str] | None = None
    # Consecutive banner lines form one block and one boundary.
    banner_block: bool = False


class LineScanner:
    """Single-use scanner; call :meth:`scan` once per snapshot."""

    def __init__(self, rules: LineScanRules) -> None:
        self._rules = rules
        self._run = RunBuffer()
        self._state = ScanState.IDLE
        self._shell_mode = False
        self._in_ide_selection = False
        self._in_banner = False

    def scan(self, screen_text: str) -> list[Fragment]:
        if not screen_text or not screen_text.strip():
            return []
        for raw_line in split_lines(screen_text):
            if not self._feed(raw_line, strip_ansi(raw_line)):
                break
        return self._run.finish()

    # ── Per-line dispatch ──

    def _feed(self, raw_line: str, plain_line: str) -> bool:
        """Process one line. Returns False when scanning must stop."""
        rules = self._rules

        if _any(rules.skip, raw_line, plain_line):
            return True

        if _any(rules.banner, raw_line, plain_line):
            if not (rules.banner_block and self._in_banner):
                self._boundary(SYSTEM_START)
            self._in_banner = True
            self._shell_mode = False
            return True
        self._in_banner = False

        if self._in_ide_selection:
            if rules.ide_selection_end and rules.ide_selection_end.search(plain_line):
                self._in_ide_selection = False
            return True
        if rules.ide_selection_start and rules.ide_selection_start.search(plain_line):
            closes_inline = (
                rules.ide_selection_end is not None
                and rules.ide_selection_end.search(plain_line) is not None
            )
            self._in_ide_selection = not closes_inline
            return True

        shell = SHELL_PROMPT_RE.match(plain_line.rstrip())
        if shell:
            if not self._shell_mode:
                self._boundary(SYSTEM_EXIT)
                self._shell_mode = True
            command = (shell.group("command") or "").strip()
            if command:
                self._run.emit_system(f"{SHELL_PREFIX}{command}")
            return True

        if _any(rules.clear_command, raw_line, plain_line):
            self._boundary(SYSTEM_SCREEN_REFRESH)
            return True

        if _any(rules.interrupt, raw_line, plain_line):
            self._boundary(SYSTEM_INTERRUPTED)
            return True

        if _any(rules.bottom_status, raw_line, plain_line):
            return False

        if self._shell_mode:
            return True

        # Single-line lookahead: a rejected line is re-examined once in IDLE.
        if not self._handle(raw_line, plain_line):
            self._run.flush()
            self._state = ScanState.IDLE
            self._handle(raw_line, plain_line)
        return True

    def _boundary(self, content: str) -> None:
        self._run.emit_system(content)
        self._state = ScanState.IDLE

    def _handle(self, raw_line: str, plain_line: str) -> bool:
        if self._state is ScanState.IN_USER_FRAME:
            return self._in_user_frame(raw_line, plain_line)
        if self._state is ScanState.IN_ASSISTANT_RUN:
            return self._in_assistant_run(raw_line, plain_line)
        return self._idle(raw_line, plain_line)

    # ── State handlers ──

    def _idle(self, raw_line: str, plain_line: str) -> bool:
        rules = self._rules
        if _any(rules.user_start, raw_line, plain_line):
            first = rules.user_marker.sub("", plain_line, count=1)
            self._run.open(MessageRole.USER, self._untrail(first))
            self._state = ScanState.IN_USER_FRAME
        elif _any(rules.assistant_start, raw_line, plain_line):
            self._run.open(
                MessageRole.ASSISTANT,
                rules.assistant_marker.sub("", plain_line, count=1),
            )
            self._state = ScanState.IN_ASSISTANT_RUN
        # Anything else outside a run is UI chrome.
        return True

    def _in_user_frame(self, raw_line: str, plain_line: str) -> bool:
        rules = self._rules
        if not _any(rules.user_continuation, raw_line, plain_line):
            return False
        text = plain_line
        if rules.continuation_marker is not None:
            text = rules.continuation_marker.sub("", text, count=1)
        self._run.append(self._dedent(self._untrail(text)))
        return True

    def _in_assistant_run(self, raw_line: str, plain_line: str) -> bool:
        rules = self._rules
        if (
            _any(rules.user_start, raw_line, plain_line)
            or _any(rules.assistant_start, raw_line, plain_line)
            or _any(rules.user_continuation, raw_line, plain_line)
        ):
            return False
        self._run.append(self._dedent(plain_line))
        return True

    def _untrail(self, text: str) -> str:
        trailer = self._rules.user_trailer
        return trailer.sub("", text, count=1) if trailer is not None else text

    def _dedent(self, text: str) -> str:
        indent = self._rules.continuation_indent
        stripped = text.lstrip(" ")
        removed = len(text) - len(stripped)
        return text[min(removed, indent):]
