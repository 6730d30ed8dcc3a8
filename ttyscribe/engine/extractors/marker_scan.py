"""Marker-scan extractor.

Splits a raw snapshot at explicit start markers anchored at line start:

- user turn:      ``>`` (optional space) + ``ESC[0m`` + space
- assistant turn: ``⏺`` + ``ESC[0m``

Each marker opens a run that extends to the next marker or end of input.
The role comes from the marker that opened the run. Run content is kept
as-is, embedded control sequences included; only surrounding blank lines
and outer whitespace are trimmed. Turns need not alternate.
"""
from __future__ import annotations

import re

from ttyscribe.engine.extractors.base import split_lines, trim_blank_lines
from ttyscribe.engine.models import Fragment
from ttyscribe.shared.models.message import MessageRole

_START_RE = re.compile(
    r"^(?:\x1b\[[0-9;:]*m)*(?P<marker>> ?\x1b\[0m |⏺\x1b\[0m)",
    re.MULTILINE,
)


def _role_for(marker: str) -> MessageRole:
    return MessageRole.USER if marker.startswith(">") else MessageRole.ASSISTANT


def extract(screen_text: str) -> list[Fragment]:
    if not screen_text or not screen_text.strip():
        return []

    starts = list(_START_RE.finditer(screen_text))
    fragments: list[Fragment] = []
    for i, match in enumerate(starts):
        end = starts[i + 1].start() if i + 1 < len(starts) else len(screen_text)
        body = screen_text[match.end():end]
        content = "\n".join(trim_blank_lines(split_lines(body))).strip()
        if content:
            fragments.append(
                Fragment(role=_role_for(match.group("marker")), content=content)
            )
    return fragments
