"""Stateful extractor for Claude Code terminal snapshots.

Claude Code visual conventions:
- User prompt: ``> `` on a gray background (ESC[48;2;55;55;55m); wrapped
  lines of the same prompt keep the background without the chevron
- Assistant output: a colored ``⏺`` followed by a reset
- Banner: the orange block logo next to "Claude Code"
- ``/clear`` typed into the prompt, ``⎿ Interrupted`` / ``⎿ Error:``
- ``<ide_selection>`` blocks echoed into the prompt are dropped
- The gray rule above the input box ends the conversation area
"""
from __future__ import annotations

import re

from ttyscribe.engine.extractors.line_scan import (
    LineScanner,
    LineScanRules,
    plain,
    raw,
)
from ttyscribe.engine.models import Fragment

_GRAY_BG = r"\x1b\[48;2;55;55;55(?:;22)?m"

CLAUDE_RULES = LineScanRules(
    name="claude",
    user_start=(raw(rf"^{_GRAY_BG}>"),),
    user_continuation=(raw(r"^\x1b\[48;2;55;55;55"),),
    assistant_start=(raw(r"^\x1b\[38;2;\d+;\d+;\d+(?:;22)?m⏺\x1b\[0m"),),
    user_marker=re.compile(r"^\s*>\s?"),
    assistant_marker=re.compile(r"^\s*⏺\s?"),
    banner=(
        raw(
            r"^\x1b\[38;2;215;119;87m\s+▐\x1b\[48;2;0;0;0m▛███▜"
            r"\x1b\[49m▌\x1b\[0m\s+\x1b\[1mClaude Code\x1b\[0m"
        ),
        plain(r"✻ Welcome to Claude Code"),
    ),
    clear_command=(raw(rf"^{_GRAY_BG}>\s*/clear\s*(?:\x1b\[0m)?\s*$"),),
    interrupt=(
        raw(r"⎿\s+\x1b\[38;2;255;107;128m(?:Error:|Interrupted)"),
        plain(r"^\s*⎿\s+Interrupted by user"),
    ),
    bottom_status=(raw(r"^\x1b\[38;2;136;136;136(?:;2)?m───+\x1b\[0m$"),),
    ide_selection_start=re.compile(r"<ide_selection>"),
    ide_selection_end=re.compile(r"</ide_selection>"),
)


def extract(screen_text: str) -> list[Fragment]:
    return LineScanner(CLAUDE_RULES).scan(screen_text)
