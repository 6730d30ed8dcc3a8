"""Tool-agnostic fallback extractor.

Works on ANSI-stripped text and relies only on widely shared TUI idioms:

- a rounded box (``╭`` … ``╰``) whose first content line starts with a
  ``│ >`` chevron is a user input frame; border lines are stripped and the
  interior is de-indented
- a bare ``> text`` line at column 0 is a submitted one-line prompt
- ``✦`` opens a new assistant response; braille spinner frames start
  assistant output but are not kept (they change on every redraw)
- shell prompts, ``~/`` path lines and lone ``%`` lines are noise: the
  pending run is flushed and the line dropped
- any other text outside a frame accretes onto the current assistant run
"""
from __future__ import annotations

import re

from ttyscribe.engine.extractors.base import RunBuffer, split_lines, strip_ansi
from ttyscribe.engine.extractors.line_scan import SHELL_PROMPT_RE
from ttyscribe.engine.models import Fragment
from ttyscribe.shared.models.message import MessageRole

_USER_CONTENT_LINE = re.compile(r"^│\s*>")
_BOX_TOP = "╭"
_BOX_BOTTOM = "╰"

_SPINNER_CHARS = frozenset("⠁⠂⠄⠆⠤⠦⠧⠇⠙⠹⠼⠴⠋⠸⠏")
# Opens a fresh assistant run (one per response).
_RESPONSE_GLYPH = "✦"
_BARE_PROMPT = re.compile(r"^>\s+(?P<text>\S.*)$")


def _next_non_empty(lines: list[str], start: int) -> str | None:
    for candidate in lines[start:]:
        stripped = candidate.strip()
        if stripped:
            return stripped
    return None


def _box_interior(line: str) -> str:
    left = line.find("│")
    right = line.rfind("│")
    if left == -1:
        content = line
    elif right == left:
        content = line[left + 1:]
    else:
        content = line[left + 1:right]
    content = content.strip()
    if content.startswith(">"):
        return content[1:].lstrip()
    return content


def _is_noise(trimmed: str) -> bool:
    return (
        trimmed == "%"
        or trimmed.startswith("~/")
        or SHELL_PROMPT_RE.match(trimmed) is not None
    )


def _is_spinner_frame(trimmed: str) -> bool:
    return trimmed[0] in _SPINNER_CHARS


def extract(screen_text: str) -> list[Fragment]:
    if not screen_text or not screen_text.strip():
        return []

    lines = split_lines(strip_ansi(screen_text))
    run = RunBuffer()
    in_user_box = False

    for i, line in enumerate(lines):
        trimmed = line.strip()

        if not trimmed:
            if run.is_open:
                run.append("")
            continue

        if _is_noise(trimmed):
            run.flush()
            in_user_box = False
            continue

        if in_user_box:
            if trimmed.startswith(_BOX_BOTTOM):
                in_user_box = False
                run.flush()
            elif trimmed.startswith("│"):
                run.append(_box_interior(line))
            continue

        if trimmed.startswith(_BOX_TOP):
            following = _next_non_empty(lines, i + 1)
            if following and _USER_CONTENT_LINE.match(following):
                run.open(MessageRole.USER)
                in_user_box = True
            elif run.role is MessageRole.ASSISTANT:
                run.append(line.rstrip())
            continue

        if _USER_CONTENT_LINE.match(trimmed):
            run.open(MessageRole.USER)
            in_user_box = True
            run.append(_box_interior(line))
            continue

        bare = _BARE_PROMPT.match(line)
        if bare:
            run.open(MessageRole.USER, bare.group("text"))
            run.flush()
            continue

        if trimmed.startswith(_RESPONSE_GLYPH):
            run.open(MessageRole.ASSISTANT)
        else:
            run.ensure(MessageRole.ASSISTANT)
            if _is_spinner_frame(trimmed):
                # Animation frames start output but change on every redraw.
                continue
        run.append(line.rstrip())

    return run.finish()
