"""Extractor registry: maps extractor kinds and CLI model ids to extractors."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ttyscribe.engine.errors import UnknownExtractorError
from ttyscribe.engine.extractors import (
    claude_extractor,
    codex_extractor,
    gemini_extractor,
    generic_extractor,
    marker_scan,
)
from ttyscribe.engine.extractors.base import Extractor

logger = logging.getLogger(__name__)


class ExtractorKind(str, Enum):
    MARKER_SCAN = "marker_scan"
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    GENERIC = "generic"


_EXTRACTORS: dict[ExtractorKind, Extractor] = {
    ExtractorKind.MARKER_SCAN: marker_scan.extract,
    ExtractorKind.CLAUDE: claude_extractor.extract,
    ExtractorKind.CODEX: codex_extractor.extract,
    ExtractorKind.GEMINI: gemini_extractor.extract,
    ExtractorKind.GENERIC: generic_extractor.extract,
}


@dataclass(frozen=True)
class ToolPreset:
    """A terminal-driven CLI tool: launch command plus extractor."""
    model_id: str
    command: str
    extractor: ExtractorKind


PRESET_TOOLS: dict[str, ToolPreset] = {
    "cli/claude": ToolPreset("cli/claude", "claude", ExtractorKind.CLAUDE),
    "cli/codex": ToolPreset("cli/codex", "codex", ExtractorKind.CODEX),
    "cli/gemini": ToolPreset("cli/gemini", "gemini", ExtractorKind.GEMINI),
    "cli/debug": ToolPreset("cli/debug", "", ExtractorKind.MARKER_SCAN),
}


def is_terminal_model(model_id: str) -> bool:
    return model_id.startswith("cli/")


def parse_extractor_kind(name: str | ExtractorKind) -> ExtractorKind:
    if isinstance(name, ExtractorKind):
        return name
    try:
        return ExtractorKind(name.strip().lower())
    except ValueError:
        raise UnknownExtractorError(
            name, [k.value for k in ExtractorKind]
        ) from None


def get_extractor(kind: str | ExtractorKind) -> Extractor:
    """Return the extractor function for *kind*."""
    return _EXTRACTORS[parse_extractor_kind(kind)]


def extractor_for_model(
    model_id: str,
    *,
    tools: dict[str, ToolPreset] | None = None,
    default: str | ExtractorKind = ExtractorKind.GENERIC,
) -> Extractor:
    """Pick the extractor for a CLI model id.

    Resolution order:
    1. *tools* (configured presets, e.g. from YAML)
    2. Built-in presets (``cli/claude``, ``cli/codex``, ...)
    3. *default*
    """
    preset = (tools or {}).get(model_id) or PRESET_TOOLS.get(model_id)
    if preset is not None:
        return _EXTRACTORS[preset.extractor]
    logger.debug(
        "extractor_for_model: no preset for %s, using %s", model_id, default,
    )
    return get_extractor(default)


def build_cli_command(model_id: str, tools: dict[str, ToolPreset] | None = None) -> str:
    """Return the shell command that launches the tool for *model_id*."""
    preset = (tools or {}).get(model_id) or PRESET_TOOLS.get(model_id)
    if preset is None:
        raise KeyError(f"Unknown terminal model: {model_id}")
    if not preset.command.strip():
        raise ValueError(f"No command configured for terminal model: {model_id}")
    return preset.command
