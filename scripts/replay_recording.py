#!/usr/bin/env python3
"""Replay a recorded terminal stream through an extractor and print the transcript.

Each ``snapshot`` entry of the recording is folded into a fresh session,
in order, exactly as the live pipeline would have done it. With
``--from-chunks`` the raw output chunks are concatenated instead and
replayed as a single snapshot (useful when the recording has no
snapshots).
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from ttyscribe.engine.errors import UnknownExtractorError
from ttyscribe.engine.extractors.registry import ExtractorKind, get_extractor
from ttyscribe.engine.recorder import read_recording
from ttyscribe.engine.terminal_session import TerminalChatSession
from ttyscribe.shared.formatters.transcript import render_transcript
from ttyscribe.shared.models.session import ConversationSession


def _replay(path: Path, extractor_name: str, from_chunks: bool) -> tuple[ConversationSession, int]:
    session = ConversationSession(model_id=f"replay/{extractor_name}")
    chat = TerminalChatSession(session, extractor=get_extractor(extractor_name))

    applied = 0
    chunks: list[str] = []
    for entry in read_recording(path):
        kind = entry.get("type")
        if kind == "meta":
            session.session_id = str(entry.get("sessionId") or session.session_id)
            session.working_directory = entry.get("cwd")
        elif kind == "chunk" and from_chunks:
            chunks.append(str(entry.get("data") or ""))
        elif kind == "snapshot" and not from_chunks:
            if chat.update_from_snapshot(entry.get("text", "")):
                applied += 1
    if from_chunks and chunks:
        applied += int(chat.update_from_snapshot("".join(chunks)))
    return session, applied


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("recording", type=Path, help="Path to a .ndjson recording.")
    parser.add_argument(
        "--extractor",
        default=ExtractorKind.GENERIC.value,
        choices=[k.value for k in ExtractorKind],
        help="Extraction strategy to replay with.",
    )
    parser.add_argument(
        "--from-chunks",
        action="store_true",
        help="Replay concatenated raw chunks instead of recorded snapshots.",
    )
    parser.add_argument(
        "--hide-system",
        action="store_true",
        help="Omit system boundary messages from the output.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    console = Console()

    if not args.recording.exists():
        console.print(f"[red]Recording not found:[/red] {args.recording}")
        return 1
    try:
        session, applied = _replay(args.recording, args.extractor, args.from_chunks)
    except UnknownExtractorError as exc:
        console.print(f"[red]{exc}[/red]")
        return 2

    console.print(render_transcript(session, include_system=not args.hide_system))
    console.print(f"[dim]{applied} snapshot(s) changed the transcript[/dim]")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
