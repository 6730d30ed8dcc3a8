"""Exception hierarchy for the conversation engine.

Recoverable pipeline failures (extraction, snapshot provider, listener
callbacks) are logged and absorbed where they happen. The exceptions
below surface programming errors and misuse of the public API.
"""
from __future__ import annotations


class TtyscribeError(Exception):
    """Base exception for all engine errors."""


class ExtractionError(TtyscribeError):
    """An extractor failed on a snapshot."""
    def __init__(self, extractor: str, reason: str):
        self.extractor = extractor
        self.reason = reason
        super().__init__(f"Extractor '{extractor}' failed: {reason}")


class UnknownExtractorError(TtyscribeError):
    """Requested extractor kind is not registered."""
    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Unknown extractor '{name}'. Available extractors: {avail_str}"
        )


class InvalidSessionTransitionError(TtyscribeError, ValueError):
    """A session status change is not allowed from the current status."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid session transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class SessionNotFoundError(TtyscribeError, KeyError):
    """No registered session with the given id."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")

    def __str__(self) -> str:
        return self.args[0]


class SessionTerminatedError(TtyscribeError):
    """Operation requires a session that has not been terminated."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} has been terminated")


class StaleAttachmentError(TtyscribeError):
    """Session references a terminal instance that no longer exists."""
    def __init__(self, session_id: str, instance_id: str | None):
        self.session_id = session_id
        self.instance_id = instance_id
        super().__init__(
            f"Session {session_id} references missing terminal instance "
            f"{instance_id}"
        )
