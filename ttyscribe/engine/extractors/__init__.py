"""Snapshot extractors: ``extract(screen_text) -> list[Fragment]`` variants."""
from .base import Extractor, strip_ansi
from .registry import (
    PRESET_TOOLS,
    ExtractorKind,
    ToolPreset,
    build_cli_command,
    extractor_for_model,
    get_extractor,
    is_terminal_model,
    parse_extractor_kind,
)

__all__ = [
    "Extractor",
    "ExtractorKind",
    "PRESET_TOOLS",
    "ToolPreset",
    "build_cli_command",
    "extractor_for_model",
    "get_extractor",
    "is_terminal_model",
    "parse_extractor_kind",
    "strip_ansi",
]
