"""OpenAI Codex stateful line-scan extractor."""

from __future__ import annotations

from ttyscribe.engine.extractors import codex_extractor
from ttyscribe.engine.extractors.line_scan import (
    SYSTEM_INTERRUPTED,
    SYSTEM_SCREEN_REFRESH,
    SYSTEM_START,
)
from ttyscribe.engine.models import Fragment
from ttyscribe.shared.models.message import MessageRole

BANNER = "\n".join([
    "╭──────────────────────────────────────╮",
    "│ >_ OpenAI Codex (v0.46.0)            │",
    "│                                      │",
    "│ model:     gpt-5-codex               │",
    "╰──────────────────────────────────────╯",
])
FOOTER = "⏎ send   ⌃J newline   ⌃T transcript   ⌃C quit   98% context left"


def test_full_session_with_boundaries():
    text = "\n".join([
        BANNER,
        "",
        "▌ fix the bug",
        "▌ in parser.py",
        "",
        "• Fixed it.",
        "  Details here",
        "",
        "■ Conversation interrupted - tell the model what to do differently",
        "",
        "▌ /clear",
        "",
        FOOTER,
    ])
    assert codex_extractor.extract(text) == [
        Fragment(MessageRole.SYSTEM, SYSTEM_START),
        Fragment(MessageRole.USER, "fix the bug\nin parser.py"),
        Fragment(MessageRole.ASSISTANT, "Fixed it.\nDetails here"),
        Fragment(MessageRole.SYSTEM, SYSTEM_INTERRUPTED),
        Fragment(MessageRole.SYSTEM, SYSTEM_SCREEN_REFRESH),
    ]


def test_working_indicator_is_skipped():
    text = "\n".join([
        "› list files",
        "",
        "• Listing the directory",
        "◦ Working (3s • esc to interrupt)",
        "  src/ tests/",
    ])
    assert codex_extractor.extract(text) == [
        Fragment(MessageRole.USER, "list files"),
        Fragment(MessageRole.ASSISTANT, "Listing the directory\nsrc/ tests/"),
    ]


def test_footer_stops_scanning():
    text = "\n".join(["▌ hi", "> hello there", FOOTER, "▌ not submitted"])
    assert codex_extractor.extract(text) == [
        Fragment(MessageRole.USER, "hi"),
        Fragment(MessageRole.ASSISTANT, "hello there"),
    ]


def test_ansi_is_stripped_from_content():
    text = "\x1b[36m▌\x1b[0m \x1b[1mrefactor\x1b[0m config\n\x1b[2m•\x1b[0m Done"
    assert codex_extractor.extract(text) == [
        Fragment(MessageRole.USER, "refactor config"),
        Fragment(MessageRole.ASSISTANT, "Done"),
    ]


def test_empty_input():
    assert codex_extractor.extract("") == []
