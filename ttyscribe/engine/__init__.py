"""ttyscribe engine: terminal stream -> reconciled conversation transcript."""
from .models import (
    Fragment,
    SessionChange,
    StreamTriggerEvent,
    TriggerKind,
    UpdateType,
)
from .config import EngineConfig, configure_logging
from .errors import (
    ExtractionError,
    InvalidSessionTransitionError,
    SessionNotFoundError,
    SessionTerminatedError,
    StaleAttachmentError,
    TtyscribeError,
    UnknownExtractorError,
)
from .reconciler import Reconciler
from .stream_detector import StreamEventDetector
from .terminal_session import TerminalChatSession

__all__ = [
    # Models
    "Fragment",
    "SessionChange",
    "StreamTriggerEvent",
    "TriggerKind",
    "UpdateType",
    # Config
    "EngineConfig",
    "configure_logging",
    # Core
    "Reconciler",
    "StreamEventDetector",
    "TerminalChatSession",
    # Errors
    "ExtractionError",
    "InvalidSessionTransitionError",
    "SessionNotFoundError",
    "SessionTerminatedError",
    "StaleAttachmentError",
    "TtyscribeError",
    "UnknownExtractorError",
]
