"""Stateful extractor for OpenAI Codex terminal snapshots.

Codex conventions:
- Banner box containing ``>_ OpenAI Codex``
- User prompt: cyan bar ``▌`` (repeated on every wrapped line) or ``›``
- Assistant output: ``•`` or ``>`` at column 0
- ``■ Conversation interrupted`` on interrupt
- ``Working`` spinner lines are transient and skipped
- The ``⏎ send … context left`` footer ends the conversation area
"""
from __future__ import annotations

import re

from ttyscribe.engine.extractors.line_scan import LineScanner, LineScanRules, plain
from ttyscribe.engine.models import Fragment

CODEX_RULES = LineScanRules(
    name="codex",
    user_start=(plain(r"^[▌›] "),),
    user_continuation=(plain(r"^▌"),),
    assistant_start=(plain(r"^[•>] "),),
    user_marker=re.compile(r"^[▌›] ?"),
    assistant_marker=re.compile(r"^[•>] ?"),
    banner=(plain(r">_ OpenAI Codex"),),
    clear_command=(plain(r"^[▌›] /clear\s*$"),),
    interrupt=(plain(r"^■ Conversation interrupted"),),
    bottom_status=(plain(r"context left\s*$"),),
    skip=(plain(r"^\s*(?:◦\s+)?Working\b"),),
    continuation_marker=re.compile(r"^▌ ?"),
)


def extract(screen_text: str) -> list[Fragment]:
    return LineScanner(CODEX_RULES).scan(screen_text)
