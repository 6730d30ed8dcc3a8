"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TTYSCRIBE_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


# Optional sink for recoverable pipeline failures surfaced to the host.
# Signature: def sink(session_id: str, message: str) -> None
LogSink = Callable[[str, str], None]

_TRUTHY = {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Conversation engine configuration."""

    # Quiet period after the last output chunk before an idle trigger
    # fires. Set to 0 (or a negative value) to disable idle detection.
    idle_timeout_seconds: float = 0.3

    # Reconciler thresholds: shorter/longer length ratio required for a
    # substring match, and minimum edit-distance similarity.
    length_ratio: float = 0.9
    similarity_threshold: float = 0.95
    # How many trailing messages a snapshot is aligned against.
    lookback_window: int = 64

    # Detector buffer cap (characters); oldest output is discarded first.
    max_buffer_chars: int = 2 * 1024 * 1024
    # Max wait for the snapshot provider before falling back to the
    # detector buffer.
    snapshot_timeout_seconds: float = 0.25

    # Extractor used when a model id has no tool preset.
    default_extractor: str = "generic"

    # Raw stream recording (development aid).
    recording_enabled: bool = False
    recording_dir: str | None = None
    recording_max_bytes: int = 5 * 1024 * 1024

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TTYSCRIBE_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TTYSCRIBE_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: TTYSCRIBE_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no TTYSCRIBE_* env vars set, using defaults")

        config = cls(
            idle_timeout_seconds=float(os.getenv(
                "TTYSCRIBE_IDLE_TIMEOUT", str(cls.idle_timeout_seconds)
            )),
            length_ratio=float(os.getenv(
                "TTYSCRIBE_LENGTH_RATIO", str(cls.length_ratio)
            )),
            similarity_threshold=float(os.getenv(
                "TTYSCRIBE_SIMILARITY_THRESHOLD", str(cls.similarity_threshold)
            )),
            lookback_window=int(os.getenv(
                "TTYSCRIBE_LOOKBACK_WINDOW", str(cls.lookback_window)
            )),
            max_buffer_chars=int(os.getenv(
                "TTYSCRIBE_MAX_BUFFER_CHARS", str(cls.max_buffer_chars)
            )),
            snapshot_timeout_seconds=float(os.getenv(
                "TTYSCRIBE_SNAPSHOT_TIMEOUT", str(cls.snapshot_timeout_seconds)
            )),
            default_extractor=os.getenv(
                "TTYSCRIBE_DEFAULT_EXTRACTOR", cls.default_extractor
            ),
            recording_enabled=(
                os.getenv("TTYSCRIBE_RECORDING", "").lower() in _TRUTHY
            ),
            recording_dir=os.getenv("TTYSCRIBE_RECORDING_DIR") or None,
            recording_max_bytes=int(os.getenv(
                "TTYSCRIBE_RECORDING_MAX_BYTES", str(cls.recording_max_bytes)
            )),
            log_level=os.getenv("TTYSCRIBE_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: idle_timeout=%ss extractor=%s log_level=%s",
            config.idle_timeout_seconds, config.default_extractor,
            config.log_level,
        )
        return config


def configure_logging(config: EngineConfig) -> None:
    """Apply the configured level to the package logger."""
    level = logging.getLevelName(config.log_level.upper())
    if not isinstance(level, int):
        logger.warning(
            "configure_logging: unknown log level %r, using INFO",
            config.log_level,
        )
        level = logging.INFO
    logging.getLogger("ttyscribe").setLevel(level)
