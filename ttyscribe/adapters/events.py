"""Event types published by the orchestrator.

Each event is a flat dataclass with an ``event_type`` tag so consumers
(persistence, UI) can dispatch without importing engine types.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ttyscribe.engine.models import SessionChange, StreamTriggerEvent


@dataclass
class TerminalEvent:
    """Base event from the conversation orchestrator."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SessionUpdated(TerminalEvent):
    """Session changed; ``session`` is the ``ConversationSession.to_dict()`` payload."""
    event_type: str = "session_updated"
    update_type: str = ""
    session: dict[str, Any] = field(default_factory=dict)
    message: dict[str, Any] | None = None


@dataclass
class TriggerFired(TerminalEvent):
    event_type: str = "trigger_fired"
    instance_id: str = ""
    kind: str = ""
    provider: str | None = None


@dataclass
class TerminalExited(TerminalEvent):
    event_type: str = "terminal_exited"
    instance_id: str = ""
    exit_code: int | None = None
    signal: int | None = None


_EVENT_MAP: dict[str, type[TerminalEvent]] = {
    "session_updated": SessionUpdated,
    "trigger_fired": TriggerFired,
    "terminal_exited": TerminalExited,
}


def change_to_event(change: SessionChange) -> SessionUpdated:
    return SessionUpdated(
        session_id=change.session_id,
        update_type=change.update_type.value,
        session=change.session.to_dict(),
        message=change.message.to_dict() if change.message is not None else None,
    )


def trigger_to_event(
    session_id: str, instance_id: str, event: StreamTriggerEvent,
) -> TriggerFired:
    return TriggerFired(
        session_id=session_id,
        instance_id=instance_id,
        kind=event.kind.value,
        provider=event.provider,
    )


def dict_to_event(data: dict[str, Any]) -> TerminalEvent:
    """Convert a plain dict (e.g. from a host callback) to a typed event."""
    event_type = data.get("event_type", "")
    cls = _EVENT_MAP.get(event_type, TerminalEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    return cls(**filtered)
