"""Core enums and transient data types shared across the engine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING

from ttyscribe.shared.models.message import ConversationMessage, MessageRole

if TYPE_CHECKING:
    from ttyscribe.shared.models.session import ConversationSession


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerKind(str, Enum):
    """Signals meaning "now is a good time to re-extract"."""
    SESSION_BANNER = "session_banner"
    SCREEN_CLEARED = "screen_cleared"
    ENTER_PRESSED = "enter_pressed"
    OUTPUT_IDLE = "output_idle"


class UpdateType(str, Enum):
    MESSAGE_ADDED = "message_added"
    METADATA_UPDATED = "metadata_updated"
    STATUS_CHANGED = "status_changed"


@dataclass
class StreamTriggerEvent:
    kind: TriggerKind
    raw_match: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    # Banner only: which CLI tool printed it ("claude", "codex", "gemini").
    provider: str | None = None
    # Idle only: seconds since the last observed byte.
    idle_for: float | None = None


@dataclass(frozen=True)
class Fragment:
    """One role-tagged span produced by a single extraction pass."""
    role: MessageRole
    content: str


@dataclass
class SessionChange:
    """Change notification emitted after every session mutation."""
    session_id: str
    update_type: UpdateType
    session: ConversationSession
    message: ConversationMessage | None = None
    timestamp: datetime = field(default_factory=_utcnow)
