"""Glue between live terminal instances and conversation sessions.

Keeps ``session_id <-> attached instance <-> detector`` bookkeeping. Every
detector trigger asks the snapshot provider for the current screen text
(falling back to the detector's own buffer) and folds it into the owning
session. Refreshes for one instance run strictly one at a time; triggers
arriving while a refresh awaits the provider collapse into one follow-up.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from ttyscribe.adapters.event_bus import EventBus
from ttyscribe.adapters.events import (
    TerminalEvent,
    TerminalExited,
    change_to_event,
    trigger_to_event,
)
from ttyscribe.engine.config import EngineConfig, LogSink
from ttyscribe.engine.errors import (
    SessionNotFoundError,
    SessionTerminatedError,
    StaleAttachmentError,
)
from ttyscribe.engine.extractors.registry import (
    PRESET_TOOLS,
    ToolPreset,
    extractor_for_model,
)
from ttyscribe.engine.models import SessionChange, StreamTriggerEvent, TriggerKind
from ttyscribe.engine.recorder import StreamRecorder
from ttyscribe.engine.stream_detector import StreamEventDetector
from ttyscribe.engine.terminal_session import ChangeListener, TerminalChatSession
from ttyscribe.shared.models.session import ConversationSession, SessionStatus

logger = logging.getLogger(__name__)


class TerminalStreamSource(Protocol):
    """A live terminal instance (PTY or equivalent) owned by the host."""

    id: str

    def on_data(self, listener: Callable[[str], None]) -> Callable[[], None]: ...

    def on_write(self, listener: Callable[[str], None]) -> Callable[[], None]: ...

    def write(self, text: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self) -> None: ...


@dataclass(frozen=True)
class SnapshotContext:
    session_id: str
    instance_id: str
    trigger_kind: TriggerKind


SnapshotResult = Union[str, None, Awaitable[Union[str, None]]]
SnapshotProvider = Callable[[SnapshotContext], SnapshotResult]
InstanceLookup = Callable[[str], Union[TerminalStreamSource, None]]


@dataclass
class _Binding:
    """Live pipeline for one attached instance.

    Passed to :meth:`TerminalChatSession.attach` as its pipeline, so the
    session closes it on detach/restart/terminate/exit.
    """
    session_id: str
    source: TerminalStreamSource
    detector: StreamEventDetector
    release: Callable[[_Binding], None]
    running: bool = False
    pending: StreamTriggerEvent | None = None
    closed: bool = False
    unsubscribers: list[Callable[[], None]] = field(default_factory=list)

    @property
    def instance_id(self) -> str:
        return self.source.id

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.pending = None
        while self.unsubscribers:
            self.unsubscribers.pop()()
        self.detector.destroy()
        self.release(self)


class Orchestrator:
    """Owns sessions and their live pipelines."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        snapshot_provider: SnapshotProvider | None = None,
        instance_lookup: InstanceLookup | None = None,
        event_bus: EventBus | None = None,
        tools: dict[str, ToolPreset] | None = None,
        log_sink: LogSink | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._snapshot_provider = snapshot_provider
        self._instance_lookup = instance_lookup
        self._event_bus = event_bus
        self._tools = dict(tools or {})
        self._log_sink = log_sink
        self._loop = loop
        self._sessions: dict[str, TerminalChatSession] = {}
        self._bindings: dict[str, _Binding] = {}
        self._instances: dict[str, str] = {}
        self._unsubscribers: dict[str, Callable[[], None]] = {}
        self._listeners: list[ChangeListener] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ── Session registry ──

    def register_session(
        self, session: ConversationSession | TerminalChatSession,
    ) -> TerminalChatSession:
        """Track a session (new or loaded from persistence)."""
        if isinstance(session, TerminalChatSession):
            chat = session
        else:
            chat = TerminalChatSession.from_config(
                session,
                self._config,
                extractor=extractor_for_model(
                    session.model_id,
                    tools=self._tools,
                    default=self._config.default_extractor,
                ),
                log_sink=self._log_sink,
            )
        if chat.id in self._sessions:
            raise ValueError(f"Session already registered: {chat.id}")
        self._sessions[chat.id] = chat
        self._unsubscribers[chat.id] = chat.subscribe(self._forward_change)
        logger.debug("Registered session %s (%s)", chat.id, chat.status.value)
        return chat

    def create_session(
        self,
        model_id: str,
        *,
        working_directory: str | None = None,
        source: TerminalStreamSource | None = None,
    ) -> TerminalChatSession:
        """Register a fresh session and optionally attach it to *source*."""
        chat = self.register_session(ConversationSession(
            model_id=model_id, working_directory=working_directory,
        ))
        if source is not None:
            self.attach(chat.id, source)
        return chat

    def remove_session(self, session_id: str) -> TerminalChatSession:
        """Stop tracking a session. Its pipeline is torn down first."""
        chat = self.get_session(session_id)
        chat.detach()
        self._unsubscribers.pop(session_id)()
        del self._sessions[session_id]
        logger.debug("Removed session %s", session_id)
        return chat

    def get_session(self, session_id: str) -> TerminalChatSession:
        chat = self._sessions.get(session_id)
        if chat is None:
            raise SessionNotFoundError(session_id)
        return chat

    @property
    def sessions(self) -> list[TerminalChatSession]:
        return list(self._sessions.values())

    def find_session_by_instance(self, instance_id: str) -> TerminalChatSession | None:
        session_id = self._instances.get(instance_id)
        if session_id is not None:
            return self._sessions.get(session_id)
        for chat in self._sessions.values():
            if chat.attached_instance_id == instance_id:
                return chat
        return None

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Listen to changes of every registered session."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ── Attachment lifecycle ──

    def attach(self, session_id: str, source: TerminalStreamSource) -> None:
        chat = self._attachable(session_id, source)
        binding = self._build_binding(session_id, source)
        try:
            chat.attach(source.id, pipeline=binding)
        except Exception:
            binding.close()
            raise
        self._bind(binding)

    def detach(self, session_id: str) -> None:
        self.get_session(session_id).detach()

    def restart(
        self,
        session_id: str,
        source: TerminalStreamSource,
        *,
        kill_previous: bool = True,
    ) -> None:
        """Replace the session's instance; the old pipeline is torn down first."""
        chat = self._attachable(session_id, source)
        previous = self._bindings.get(session_id)
        previous_source = previous.source if previous is not None else None
        binding = self._build_binding(session_id, source)
        try:
            chat.restart(source.id, pipeline=binding)
        except Exception:
            binding.close()
            raise
        self._bind(binding)
        if kill_previous and previous_source is not None and previous_source is not source:
            self._kill(previous_source)

    def terminate(self, session_id: str, *, kill: bool = False) -> bool:
        chat = self.get_session(session_id)
        binding = self._bindings.get(session_id)
        source = binding.source if binding is not None else None
        terminated = chat.terminate()
        if kill and source is not None:
            self._kill(source)
        return terminated

    def resume(self, session_id: str) -> None:
        """Re-attach a persisted session to its still-running instance.

        Raises StaleAttachmentError when the instance cannot be found.
        """
        chat = self.get_session(session_id)
        instance_id = chat.attached_instance_id
        source = None
        if instance_id is not None and self._instance_lookup is not None:
            source = self._instance_lookup(instance_id)
        if source is None:
            raise StaleAttachmentError(session_id, instance_id)
        self.attach(session_id, source)

    def reconcile_with_live_instances(self, live_instance_ids: Iterable[str]) -> list[str]:
        """Cold-start check of persisted attachments against running instances.

        Returns the ids of sessions whose reference was cleared.
        """
        live = set(live_instance_ids)
        cleared: list[str] = []
        for chat in list(self._sessions.values()):
            if chat.id in self._bindings:
                continue
            instance_id = chat.attached_instance_id
            if instance_id is not None and instance_id in live:
                if self._instance_lookup is None:
                    continue
                try:
                    self.resume(chat.id)
                    continue
                except StaleAttachmentError:
                    logger.warning(
                        "Session %s: instance %s reported live but not found",
                        chat.id, instance_id,
                    )
            if chat.mark_stale():
                cleared.append(chat.id)
        if cleared:
            logger.info(
                "reconcile_with_live_instances: cleared %d stale sessions: %s",
                len(cleared), ", ".join(cleared),
            )
        return cleared

    def handle_process_exit(
        self,
        instance_id: str,
        exit_code: int | None = None,
        signal: int | None = None,
    ) -> bool:
        chat = self.find_session_by_instance(instance_id)
        if chat is None:
            logger.debug("Exit for unknown instance %s dropped", instance_id)
            return False
        handled = chat.record_process_exit(exit_code=exit_code, signal=signal)
        self._publish(TerminalExited(
            session_id=chat.id,
            instance_id=instance_id,
            exit_code=exit_code,
            signal=signal,
        ))
        return handled

    async def shutdown(self) -> None:
        """Detach every session and wait for in-flight refreshes to stop."""
        for chat in list(self._sessions.values()):
            if chat.id in self._bindings:
                chat.detach()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator shut down (%d sessions)", len(self._sessions))

    # ── Trigger pipeline ──

    async def handle_trigger(self, session_id: str, event: StreamTriggerEvent) -> bool:
        """Refresh the session from the current screen. Returns True on change."""
        chat = self.get_session(session_id)
        binding = self._bindings.get(session_id)
        if binding is None or binding.closed:
            logger.debug("Session %s not attached, %s dropped", session_id, event.kind.value)
            return False
        if binding.running:
            binding.pending = event
            return False

        binding.running = True
        changed = False
        try:
            current: StreamTriggerEvent | None = event
            while current is not None and not binding.closed:
                changed = await self._refresh(chat, binding, current) or changed
                current, binding.pending = binding.pending, None
        finally:
            binding.running = False
        return changed

    async def _refresh(
        self,
        chat: TerminalChatSession,
        binding: _Binding,
        event: StreamTriggerEvent,
    ) -> bool:
        text = await self._fetch_snapshot(binding, event)
        if binding.closed:
            logger.debug("Session %s: pipeline closed during refresh", chat.id)
            return False
        if not text:
            text = binding.detector.buffered_output
        if not text or not text.strip():
            logger.debug("Session %s: empty snapshot on %s", chat.id, event.kind.value)
            return False
        if text == chat.session.last_recorded_snapshot:
            logger.debug("Session %s: snapshot unchanged on %s", chat.id, event.kind.value)
            return False
        binding.detector.record_snapshot(event.kind, text)
        return chat.update_from_snapshot(text)

    async def _fetch_snapshot(
        self, binding: _Binding, event: StreamTriggerEvent,
    ) -> str | None:
        if self._snapshot_provider is None:
            return None
        context = SnapshotContext(
            session_id=binding.session_id,
            instance_id=binding.instance_id,
            trigger_kind=event.kind,
        )
        try:
            result = self._snapshot_provider(context)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(
                    result, timeout=self._config.snapshot_timeout_seconds,
                )
        except asyncio.TimeoutError:
            logger.warning(
                "Snapshot provider timed out after %ss for instance %s",
                self._config.snapshot_timeout_seconds, binding.instance_id,
            )
            return None
        except Exception as exc:
            logger.warning(
                "Snapshot provider failed for instance %s: %s",
                binding.instance_id, exc, exc_info=True,
            )
            return None
        return result or None

    def _on_trigger(self, binding: _Binding, event: StreamTriggerEvent) -> None:
        if binding.closed:
            return
        logger.debug(
            "Instance %s: %s trigger", binding.instance_id, event.kind.value,
        )
        if event.kind is TriggerKind.SESSION_BANNER and event.provider:
            self._note_provider(binding.session_id, event.provider)
        self._publish(trigger_to_event(binding.session_id, binding.instance_id, event))
        if binding.running:
            binding.pending = event
            return
        self._spawn(self.handle_trigger(binding.session_id, event))

    def _note_provider(self, session_id: str, provider: str) -> None:
        chat = self._sessions.get(session_id)
        if chat is None or chat.session.metadata.get("detected_provider") == provider:
            return
        chat.update_metadata(detected_provider=provider)
        model_id = chat.session.model_id
        if model_id in self._tools or model_id in PRESET_TOOLS:
            return
        chat.extractor = extractor_for_model(
            f"cli/{provider}", tools=self._tools, default=self._config.default_extractor,
        )
        logger.info(
            "Session %s: %s banner seen, switched extractor for model %s",
            session_id, provider, model_id,
        )

    # ── Internals ──

    def _attachable(self, session_id: str, source: TerminalStreamSource) -> TerminalChatSession:
        chat = self.get_session(session_id)
        if chat.status is SessionStatus.TERMINATED:
            raise SessionTerminatedError(session_id)
        owner = self._instances.get(source.id)
        if owner is not None and owner != session_id:
            raise ValueError(
                f"Instance {source.id} is already attached to session {owner}"
            )
        return chat

    def _build_binding(self, session_id: str, source: TerminalStreamSource) -> _Binding:
        detector = StreamEventDetector(
            source.id,
            idle_timeout_seconds=self._config.idle_timeout_seconds,
            max_buffer_chars=self._config.max_buffer_chars,
            loop=self._loop,
            recorder=self._make_recorder(session_id, source.id),
        )
        binding = _Binding(
            session_id=session_id,
            source=source,
            detector=detector,
            release=self._release,
        )
        for kind in TriggerKind:
            binding.unsubscribers.append(
                detector.on(kind, lambda event, b=binding: self._on_trigger(b, event))
            )
        detector.attach_source(source)
        return binding

    def _bind(self, binding: _Binding) -> None:
        self._bindings[binding.session_id] = binding
        self._instances[binding.instance_id] = binding.session_id

    def _release(self, binding: _Binding) -> None:
        if self._bindings.get(binding.session_id) is binding:
            del self._bindings[binding.session_id]
        if self._instances.get(binding.instance_id) == binding.session_id:
            del self._instances[binding.instance_id]

    def _make_recorder(self, session_id: str, instance_id: str) -> StreamRecorder | None:
        if not self._config.recording_enabled or not self._config.recording_dir:
            return None
        try:
            return StreamRecorder.create(
                self._config.recording_dir,
                session_id,
                instance_id,
                max_bytes=self._config.recording_max_bytes,
                metadata={"cwd": self.get_session(session_id).session.working_directory},
            )
        except OSError as exc:
            logger.warning("Could not start stream recording for %s: %s", instance_id, exc)
            return None

    @staticmethod
    def _kill(source: TerminalStreamSource) -> None:
        try:
            source.kill()
        except Exception:
            logger.warning("Failed to kill instance %s", source.id, exc_info=True)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, trigger dropped")
            coro.close()
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Trigger refresh failed: %s", exc, exc_info=exc)

    def _forward_change(self, change: SessionChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Orchestrator change listener failed")
        self._publish(change_to_event(change))

    def _publish(self, event: TerminalEvent) -> None:
        if self._event_bus is not None:
            self._event_bus.emit_nowait(event)
