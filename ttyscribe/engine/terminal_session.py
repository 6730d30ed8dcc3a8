"""Conversation session state machine for one terminal-driven chat.

Owns the canonical message list of a :class:`ConversationSession` and is
the only writer to it. Snapshots are folded in through an extractor and
the reconciler; attach/detach/restart/terminate/exit calls move the
session through the status machine in ``lifecycle.py``.

Message list invariants:

- chronological; timestamps never decrease
- only the last message is ever replaced in place, earlier ones are frozen
- the list never shrinks

Every mutation synchronously emits a :class:`SessionChange` to subscribed
listeners, in mutation order.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Protocol

from ttyscribe.engine.config import EngineConfig, LogSink
from ttyscribe.engine.errors import (
    ExtractionError,
    InvalidSessionTransitionError,
    SessionTerminatedError,
)
from ttyscribe.engine.extractors.base import Extractor
from ttyscribe.engine.extractors.registry import extractor_for_model
from ttyscribe.engine.lifecycle import validate_transition
from ttyscribe.engine.models import Fragment, SessionChange, UpdateType
from ttyscribe.engine.reconciler import Reconciler
from ttyscribe.shared.models.message import ConversationMessage, MessageRole, _gen_id
from ttyscribe.shared.models.session import ConversationSession, SessionStatus

logger = logging.getLogger(__name__)

SYSTEM_RESTART = "cli:restart"

ChangeListener = Callable[[SessionChange], None]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _extractor_name(extractor: Extractor) -> str:
    module = getattr(extractor, "__module__", None) or ""
    return module.rsplit(".", 1)[-1] or getattr(extractor, "__name__", repr(extractor))


class Pipeline(Protocol):
    """Live observation pipeline for an attached instance (detector + wiring)."""

    def close(self) -> None: ...


class TerminalChatSession:
    """Applies snapshots and lifecycle calls to one conversation session."""

    def __init__(
        self,
        session: ConversationSession | None = None,
        *,
        extractor: Extractor | None = None,
        reconciler: Reconciler | None = None,
        lookback_window: int = 64,
        id_factory: Callable[[], str] = _gen_id,
        clock: Clock = _utcnow,
        log_sink: LogSink | None = None,
    ) -> None:
        self._session = session if session is not None else ConversationSession()
        self._extractor = extractor or extractor_for_model(self._session.model_id)
        self._reconciler = reconciler or Reconciler()
        self._lookback_window = max(1, lookback_window)
        self._id_factory = id_factory
        self._clock = clock
        self._log_sink = log_sink
        self._pipeline: Pipeline | None = None
        self._listeners: list[ChangeListener] = []

    @classmethod
    def from_config(
        cls,
        session: ConversationSession,
        config: EngineConfig,
        **kwargs: Any,
    ) -> TerminalChatSession:
        """Build a session wired with the thresholds and defaults in *config*."""
        kwargs.setdefault(
            "extractor",
            extractor_for_model(session.model_id, default=config.default_extractor),
        )
        return cls(
            session,
            reconciler=Reconciler(
                length_ratio=config.length_ratio,
                similarity_threshold=config.similarity_threshold,
            ),
            lookback_window=config.lookback_window,
            **kwargs,
        )

    # ── Read access ──

    @property
    def id(self) -> str:
        return self._session.session_id

    @property
    def session(self) -> ConversationSession:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def attached_instance_id(self) -> str | None:
        return self._session.attached_instance_id

    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        return tuple(self._session.messages)

    @property
    def extractor(self) -> Extractor:
        return self._extractor

    @extractor.setter
    def extractor(self, extractor: Extractor) -> None:
        self._extractor = extractor

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns an idempotent unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Snapshot reconciliation ──

    def update_from_snapshot(self, screen_text: str) -> bool:
        """Fold the conversation visible in *screen_text* into the session.

        Returns True when the message list changed. Failures leave the
        session untouched.
        """
        if self._session.status is SessionStatus.TERMINATED:
            logger.debug("Session %s terminated, ignoring snapshot", self.id)
            return False
        if not screen_text or not screen_text.strip():
            return False

        try:
            fragments = self._extractor(screen_text)
        except Exception as exc:
            error = ExtractionError(_extractor_name(self._extractor), str(exc))
            logger.exception("Session %s: %s", self.id, error)
            self._report(str(error))
            return False

        usable = [f for f in fragments if f.content and f.content.strip()]
        if not usable:
            logger.debug("Session %s: snapshot produced no fragments", self.id)
            return False

        changed = self._fold(usable)
        self._session.last_recorded_snapshot = screen_text
        if changed:
            logger.debug(
                "Session %s: folded %d fragments, %d messages",
                self.id, len(usable), len(self._session.messages),
            )
        return changed

    def _fold(self, fragments: list[Fragment]) -> bool:
        messages = self._session.messages
        # Fragments are aligned, in order, against the tail of the list.
        cursor = max(0, len(messages) - max(self._lookback_window, len(fragments)))
        changed = False

        for position, fragment in enumerate(fragments):
            candidate = ConversationMessage(
                role=fragment.role,
                content=fragment.content,
                id=self._id_factory(),
            )
            last_index = len(messages) - 1

            if fragment.role is MessageRole.SYSTEM:
                seen = self._recorded_boundary(
                    fragment.content, cursor, fragments[position + 1:],
                )
                if seen != -1:
                    cursor = seen + 1
                    continue
                last = messages[-1] if messages else None
                if (
                    last is not None
                    and last.role is MessageRole.SYSTEM
                    and last.content == fragment.content
                ):
                    # Duplicate boundary with nothing in between.
                    cursor = len(messages)
                    continue
                self._append(candidate)
                cursor = len(messages)
                changed = True
                continue

            index = self._reconciler.find_similar_index(candidate, messages, cursor)
            if (
                index == -1
                and cursor <= last_index
                and self._reconciler.matches_last(messages[last_index], candidate)
            ):
                index = last_index

            if index == -1:
                self._append(candidate)
                cursor = len(messages)
                changed = True
            elif index == last_index:
                changed = self._replace_last(candidate) or changed
                cursor = len(messages)
            else:
                # Earlier messages are frozen; this turn is already recorded.
                cursor = index + 1

        return changed

    def _recorded_boundary(self, content: str, start: int, following: list[Fragment]) -> int:
        """Index of the recorded boundary this one re-renders, or -1.

        An identical system message only counts when every turn recorded
        after it shows up again, in order, among the *following*
        fragments of the same snapshot. Otherwise the boundary is new,
        e.g. a second ``/clear`` while the first is still on screen.
        """
        messages = self._session.messages
        for index in range(start, len(messages)):
            message = messages[index]
            if (
                message.role is MessageRole.SYSTEM
                and message.content == content
                and self._covered(messages[index + 1:], following)
            ):
                return index
        return -1

    def _covered(self, recorded: list[ConversationMessage], following: list[Fragment]) -> bool:
        pending = (
            ConversationMessage(role=f.role, content=f.content)
            for f in following
            if f.role is not MessageRole.SYSTEM
        )
        for message in recorded:
            if message.role is MessageRole.SYSTEM:
                continue
            # Shared generator: each fragment matches at most one turn.
            if not any(self._reconciler.matches_last(message, c) for c in pending):
                return False
        return True

    def _now(self) -> datetime:
        now = self._clock()
        last = self._session.last_message
        if last is not None and last.timestamp > now:
            return last.timestamp
        return now

    def _append(self, message: ConversationMessage) -> None:
        message.timestamp = self._now()
        self._session.messages.append(message)
        self._session.updated_at = message.timestamp
        self._emit(UpdateType.MESSAGE_ADDED, message)

    def _replace_last(self, candidate: ConversationMessage) -> bool:
        last = self._session.messages[-1]
        if last.content == candidate.content:
            return False
        last.content = candidate.content
        last.timestamp = self._now()
        self._session.updated_at = last.timestamp
        self._emit(UpdateType.MESSAGE_ADDED, last)
        return True

    def record_boundary(self, content: str) -> ConversationMessage | None:
        """Append a system boundary unless the last message already is one."""
        if self._session.status is SessionStatus.TERMINATED:
            raise SessionTerminatedError(self.id)
        last = self._session.last_message
        if last is not None and last.role is MessageRole.SYSTEM and last.content == content:
            return None
        message = ConversationMessage(
            role=MessageRole.SYSTEM, content=content, id=self._id_factory(),
        )
        self._append(message)
        return message

    # ── Lifecycle ──

    def attach(self, instance_id: str, pipeline: Pipeline | None = None) -> None:
        """Attach a terminal instance, replacing any current attachment."""
        if self._session.status is SessionStatus.TERMINATED:
            raise SessionTerminatedError(self.id)
        self._release_pipeline()
        validate_transition(self._session.status, SessionStatus.ACTIVE)
        self._session.attached_instance_id = instance_id
        self._pipeline = pipeline
        self._set_status(SessionStatus.ACTIVE)
        logger.info("Session %s attached to instance %s", self.id, instance_id)

    def detach(self) -> None:
        """Stop observing the attached instance; the session becomes exited."""
        if self._session.status is not SessionStatus.ACTIVE:
            self._release_pipeline()
            return
        previous = self._session.attached_instance_id
        self._release_pipeline()
        self._set_status(SessionStatus.EXITED)
        logger.info("Session %s detached from instance %s", self.id, previous)

    def restart(self, instance_id: str, pipeline: Pipeline | None = None) -> None:
        """Swap the attached instance for a new one (active -> active)."""
        if self._session.status is not SessionStatus.ACTIVE:
            raise InvalidSessionTransitionError(
                self._session.status.value, "restart", [SessionStatus.ACTIVE.value],
            )
        previous = self._session.attached_instance_id
        self._release_pipeline()
        self._session.attached_instance_id = instance_id
        self._pipeline = pipeline
        self._session.last_recorded_snapshot = None
        self._session.metadata["restart_count"] = (
            int(self._session.metadata.get("restart_count", 0)) + 1
        )
        self._set_status(SessionStatus.ACTIVE)
        self.record_boundary(SYSTEM_RESTART)
        logger.info(
            "Session %s restarted: instance %s -> %s", self.id, previous, instance_id,
        )

    def terminate(self) -> bool:
        """Explicit user termination. Idempotent; returns False if already terminated."""
        if self._session.status is SessionStatus.TERMINATED:
            return False
        self._release_pipeline()
        self._set_status(SessionStatus.TERMINATED)
        logger.info("Session %s terminated", self.id)
        return True

    def record_process_exit(
        self,
        exit_code: int | None = None,
        signal: int | None = None,
    ) -> bool:
        """The observed process ended without explicit termination."""
        if self._session.status is not SessionStatus.ACTIVE:
            logger.debug(
                "Session %s: exit notification ignored in status %s",
                self.id, self._session.status.value,
            )
            return False
        instance_id = self._session.attached_instance_id
        self._release_pipeline()
        self._session.metadata["last_exit"] = {
            "instance_id": instance_id,
            "exit_code": exit_code,
            "signal": signal,
        }
        self._set_status(SessionStatus.EXITED)
        logger.info(
            "Session %s: instance %s exited (code=%s signal=%s)",
            self.id, instance_id, exit_code, signal,
        )
        return True

    def mark_stale(self) -> bool:
        """The referenced instance no longer exists (e.g. after a host restart).

        Clears the reference; an active session becomes exited.
        """
        instance_id = self._session.attached_instance_id
        if instance_id is None and self._session.status is not SessionStatus.ACTIVE:
            return False
        self._release_pipeline()
        self._session.metadata["stale_instance_id"] = instance_id
        if self._session.status is SessionStatus.ACTIVE:
            self._set_status(SessionStatus.EXITED)
        else:
            self._session.updated_at = self._now()
            self._emit(UpdateType.METADATA_UPDATED)
        logger.info(
            "Session %s: instance %s is gone, reference cleared", self.id, instance_id,
        )
        return True

    def update_metadata(self, **fields: Any) -> None:
        self._session.metadata.update(fields)
        self._session.updated_at = self._now()
        self._emit(UpdateType.METADATA_UPDATED)

    def _release_pipeline(self) -> None:
        pipeline, self._pipeline = self._pipeline, None
        self._session.attached_instance_id = None
        if pipeline is None:
            return
        try:
            pipeline.close()
        except Exception:
            logger.exception("Session %s: pipeline close failed", self.id)

    def _set_status(self, status: SessionStatus) -> None:
        validate_transition(self._session.status, status)
        self._session.status = status
        self._session.updated_at = self._now()
        self._emit(UpdateType.STATUS_CHANGED)

    # ── Notifications ──

    def _emit(self, update_type: UpdateType, message: ConversationMessage | None = None) -> None:
        if not self._listeners:
            return
        change = SessionChange(
            session_id=self.id,
            update_type=update_type,
            session=self._session.copy(),
            message=None if message is None else ConversationMessage(
                role=message.role,
                content=message.content,
                id=message.id,
                timestamp=message.timestamp,
                task_id=message.task_id,
                subtask_id=message.subtask_id,
            ),
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "Session %s: change listener failed on %s", self.id, update_type.value,
                )

    def _report(self, message: str) -> None:
        if self._log_sink is None:
            return
        try:
            self._log_sink(self.id, message)
        except Exception:
            logger.debug("Session %s: log sink failed", self.id, exc_info=True)
