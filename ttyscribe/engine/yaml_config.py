"""YAML configuration loader.

Loads a single YAML file with engine settings and terminal tool presets.
Keys missing from the file keep their EngineConfig defaults.

Example YAML:
    engine:
      idle_timeout_seconds: 0.5
      similarity_threshold: 0.92
      default_extractor: generic
      recording_enabled: true
      recording_dir: tmp/recordings

    tools:
      cli/claude:
        command: claude --dangerously-skip-permissions
        extractor: claude
      cli/aider:
        command: aider
        extractor: generic
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .config import EngineConfig
from .extractors.registry import ExtractorKind, ToolPreset, parse_extractor_kind

logger = logging.getLogger(__name__)


@dataclass
class TtyscribeConfig:
    """Fully parsed configuration file."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    tools: dict[str, ToolPreset] = field(default_factory=dict)


def _parse_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _parse_engine(engine_raw: dict) -> EngineConfig:
    return EngineConfig(
        idle_timeout_seconds=float(engine_raw.get(
            "idle_timeout_seconds", EngineConfig.idle_timeout_seconds
        )),
        length_ratio=float(engine_raw.get(
            "length_ratio", EngineConfig.length_ratio
        )),
        similarity_threshold=float(engine_raw.get(
            "similarity_threshold", EngineConfig.similarity_threshold
        )),
        lookback_window=int(engine_raw.get(
            "lookback_window", EngineConfig.lookback_window
        )),
        max_buffer_chars=int(engine_raw.get(
            "max_buffer_chars", EngineConfig.max_buffer_chars
        )),
        snapshot_timeout_seconds=float(engine_raw.get(
            "snapshot_timeout_seconds", EngineConfig.snapshot_timeout_seconds
        )),
        default_extractor=parse_extractor_kind(engine_raw.get(
            "default_extractor", EngineConfig.default_extractor
        )).value,
        recording_enabled=_parse_bool(engine_raw.get(
            "recording_enabled", EngineConfig.recording_enabled
        )),
        recording_dir=engine_raw.get("recording_dir") or None,
        recording_max_bytes=int(engine_raw.get(
            "recording_max_bytes", EngineConfig.recording_max_bytes
        )),
        log_level=str(engine_raw.get("log_level", EngineConfig.log_level)),
    )


def _parse_tools(tools_raw: dict) -> dict[str, ToolPreset]:
    tools: dict[str, ToolPreset] = {}
    for model_id, entry in tools_raw.items():
        if not isinstance(entry, dict):
            logger.warning(
                "load_yaml_config: tool %s must be a mapping, got %s; skipping",
                model_id, type(entry).__name__,
            )
            continue
        tools[model_id] = ToolPreset(
            model_id=model_id,
            command=str(entry.get("command", "")),
            extractor=parse_extractor_kind(
                entry.get("extractor", ExtractorKind.GENERIC.value)
            ),
        )
    return tools


def load_yaml_config(path: str | Path) -> TtyscribeConfig:
    """Load and parse a YAML config file."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        logger.info("load_yaml_config: successfully read and parsed %s", path)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    config = TtyscribeConfig(
        engine=_parse_engine(raw.get("engine") or {}),
        tools=_parse_tools(raw.get("tools") or {}),
    )
    logger.info(
        "load_yaml_config: %s -> idle_timeout=%ss extractor=%s tools=%s",
        path.name, config.engine.idle_timeout_seconds,
        config.engine.default_extractor,
        ", ".join(sorted(config.tools)) or "(none)",
    )
    return config
