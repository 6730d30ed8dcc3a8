"""Stateful extractor for Google Gemini CLI terminal snapshots.

Gemini conventions:
- Gradient block-art banner; each logo line starts with a 24-bit
  foreground color followed by ``█`` or ``░``
- User prompt: a rounded box ``╭──╮`` / ``│ > text │`` / ``╰──╯``
- Assistant output: ``✦`` at column 0, continuation indented two columns
- ``ℹRequest cancelled.`` on interrupt
- The ``⏎ send … context left`` footer ends the conversation area
"""
from __future__ import annotations

import re

from ttyscribe.engine.extractors.line_scan import LineScanner, LineScanRules, plain, raw
from ttyscribe.engine.models import Fragment

GEMINI_RULES = LineScanRules(
    name="gemini",
    user_start=(plain(r"^│\s*> "),),
    user_continuation=(plain(r"^│"),),
    assistant_start=(plain(r"^✦ "),),
    user_marker=re.compile(r"^│\s*> ?"),
    assistant_marker=re.compile(r"^✦ ?"),
    banner=(raw(r"^\x1b\[38;2;\d+;\d+;\d+m ?[█░]"),),
    clear_command=(plain(r"^│\s*> /clear\s*│?\s*$"),),
    interrupt=(plain(r"^\s*ℹ\s*Request cancelled"),),
    bottom_status=(plain(r"context left\)?\s*$"),),
    skip=(
        plain(r"^\s*[╭╰]─"),
        # Empty input box placeholder.
        plain(r"^│\s*>\s+Type your message"),
    ),
    continuation_marker=re.compile(r"^│ ?"),
    user_trailer=re.compile(r"\s*│\s*$"),
    banner_block=True,
)


def extract(screen_text: str) -> list[Fragment]:
    return LineScanner(GEMINI_RULES).scan(screen_text)
