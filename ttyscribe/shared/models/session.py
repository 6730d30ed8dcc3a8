"""Conversation session state: ordered message list plus attachment info."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid
from typing import Any

from ttyscribe.shared.models.message import ConversationMessage


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        dt = datetime.fromisoformat(value)
    else:
        return _utcnow()
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SessionStatus(Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"
    EXITED = "exited"


@dataclass
class ConversationSession:
    """Holds all conversation state for one terminal-driven chat."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    messages: list[ConversationMessage] = field(default_factory=list)
    status: SessionStatus = SessionStatus.EXITED
    working_directory: str | None = None
    attached_instance_id: str | None = None
    model_id: str = "cli/unknown"
    last_recorded_snapshot: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    # Free-form details: exit code/signal, detected provider, etc.
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def last_message(self) -> ConversationMessage | None:
        return self.messages[-1] if self.messages else None

    @property
    def message_count(self) -> int:
        return len(self.messages)

    def copy(self) -> ConversationSession:
        """Deep copy used as the payload of change notifications."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "status": self.status.value,
            "messages": [m.to_dict() for m in self.messages],
            "metadata": copy.deepcopy(self.metadata),
            "working_directory": self.working_directory,
            "attached_instance_id": self.attached_instance_id,
            "model_id": self.model_id,
            "last_recorded_snapshot": self.last_recorded_snapshot,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationSession:
        return cls(
            session_id=str(data.get("id") or uuid.uuid4()),
            messages=[
                ConversationMessage.from_dict(m)
                for m in data.get("messages") or []
                if isinstance(m, dict)
            ],
            status=SessionStatus(data.get("status", SessionStatus.EXITED.value)),
            working_directory=data.get("working_directory"),
            attached_instance_id=data.get("attached_instance_id"),
            model_id=data.get("model_id") or "cli/unknown",
            last_recorded_snapshot=data.get("last_recorded_snapshot"),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            metadata=dict(data.get("metadata") or {}),
        )
