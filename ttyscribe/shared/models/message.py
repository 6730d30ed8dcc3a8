"""Conversation message model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())[:8]


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class ConversationMessage:
    role: MessageRole
    content: str
    id: str = field(default_factory=_gen_id)
    timestamp: datetime = field(default_factory=_utcnow)
    # Optional link to a task the turn belongs to (set by the host app).
    task_id: str | None = None
    subtask_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.task_id is not None:
            data["task_id"] = self.task_id
        if self.subtask_id is not None:
            data["subtask_id"] = self.subtask_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        raw_ts = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if raw_ts else _utcnow()
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            role=MessageRole(data.get("role", "assistant")),
            content=str(data.get("content") or ""),
            id=str(data.get("id") or _gen_id()),
            timestamp=timestamp,
            task_id=data.get("task_id"),
            subtask_id=data.get("subtask_id"),
        )
