"""Adapters package - bridge between live terminals and the engine.

Contains the orchestrator that binds terminal instances to conversation
sessions, plus the event bus and event types its consumers read.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "Orchestrator",
    "SnapshotContext",
    "SessionUpdated",
    "TerminalExited",
    "TriggerFired",
]

from ttyscribe.adapters.event_bus import EventBus
from ttyscribe.adapters.events import SessionUpdated, TerminalExited, TriggerFired
from ttyscribe.adapters.orchestrator import Orchestrator, SnapshotContext
