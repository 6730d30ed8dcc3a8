"""Shared types and helpers for snapshot extractors.

An extractor is a pure function ``(screen_text) -> list[Fragment]``.
Every variant obeys the same output rules:

- empty or whitespace-only input yields ``[]``
- leading/trailing blank lines of a fragment are trimmed
- an open run at end of input is flushed as the final fragment
- fragments whose trimmed content is empty are dropped
"""
from __future__ import annotations

import re
from collections.abc import Callable

from ttyscribe.engine.models import Fragment
from ttyscribe.shared.models.message import MessageRole

Extractor = Callable[[str], list[Fragment]]

# CSI (colors, cursor moves), OSC (titles, hyperlinks), charset selection
# and the remaining two-byte escapes.
_ANSI_RE = re.compile(
    r"\x1b\[[0-9;:?<=>]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[()][@-~]"
    r"|\x1b[=>78cDEHMNO]"
)


def strip_ansi(text: str) -> str:
    """Remove terminal control sequences, keeping printable text."""
    return _ANSI_RE.sub("", text)


def split_lines(text: str) -> list[str]:
    return re.split(r"\r?\n", text)


def trim_blank_lines(lines: list[str]) -> list[str]:
    start = 0
    end = len(lines)
    while start < end and not lines[start].strip():
        start += 1
    while end > start and not lines[end - 1].strip():
        end -= 1
    return lines[start:end]


def make_fragment(role: MessageRole, lines: list[str]) -> Fragment | None:
    """Build a fragment from raw run lines, or None if nothing is left."""
    trimmed = trim_blank_lines([line.rstrip() for line in lines])
    content = "\n".join(trimmed).strip()
    if not content:
        return None
    return Fragment(role=role, content=content)


class RunBuffer:
    """Accumulates lines of the currently open run and emits fragments."""

    def __init__(self) -> None:
        self.fragments: list[Fragment] = []
        self.role: MessageRole | None = None
        self.lines: list[str] = []

    @property
    def is_open(self) -> bool:
        return self.role is not None

    def open(self, role: MessageRole, first_line: str | None = None) -> None:
        self.flush()
        self.role = role
        self.lines = [] if first_line is None else [first_line]

    def ensure(self, role: MessageRole) -> None:
        """Keep the current run if it already has *role*, else start one."""
        if self.role is not role:
            self.open(role)

    def append(self, line: str) -> None:
        self.lines.append(line)

    def flush(self) -> None:
        if self.role is not None:
            fragment = make_fragment(self.role, self.lines)
            if fragment is not None:
                self.fragments.append(fragment)
        self.role = None
        self.lines = []

    def emit_system(self, content: str) -> None:
        """Flush the open run, then record a lifecycle boundary."""
        self.flush()
        self.fragments.append(Fragment(role=MessageRole.SYSTEM, content=content))

    def finish(self) -> list[Fragment]:
        self.flush()
        return self.fragments
