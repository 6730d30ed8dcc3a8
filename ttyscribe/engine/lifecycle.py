"""Conversation session status machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidSessionTransitionError rather than silently proceeding.

State Diagram:

    ACTIVE ──┬──> TERMINATED          (explicit terminate, final)
             │
             ├──> EXITED ──> ACTIVE   (process ended; re-attach later)
             │
             └──> ACTIVE              (restart with a new instance)
"""
from __future__ import annotations

from ttyscribe.engine.errors import InvalidSessionTransitionError
from ttyscribe.shared.models.session import SessionStatus

VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.ACTIVE: {
        SessionStatus.ACTIVE,  # restart
        SessionStatus.EXITED,
        SessionStatus.TERMINATED,
    },
    SessionStatus.EXITED: {
        SessionStatus.ACTIVE,  # attach a new instance
        SessionStatus.TERMINATED,
    },
    SessionStatus.TERMINATED: set(),
}


def validate_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Validate a status transition. Raises if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        raise InvalidSessionTransitionError(
            current.value,
            target.value,
            sorted(s.value for s in allowed),
        )
