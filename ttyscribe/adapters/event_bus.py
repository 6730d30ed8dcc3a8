"""Async event bus between the orchestrator and its consumers.

Session changes are produced synchronously inside the pipeline; the
EventBus queues them for persistence or UI consumer loops.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from ttyscribe.adapters.events import TerminalEvent, dict_to_event

logger = logging.getLogger(__name__)

PUT_TIMEOUT_SECONDS = 30.0


class EventBus:
    """Async queue bridging orchestrator notifications to consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TerminalEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit(self, event: TerminalEvent) -> None:
        """Queue an event, waiting for room (backpressure) up to 30s."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=PUT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %ss, dropping: %s (queue size: %d)",
                PUT_TIMEOUT_SECONDS,
                event.event_type,
                self._queue.qsize(),
            )

    async def emit_dict(self, data: dict[str, Any]) -> None:
        await self.emit(dict_to_event(data))

    def emit_nowait(self, event: TerminalEvent) -> bool:
        """Queue from synchronous code. Returns False if dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )
            return False
        return True

    async def consume(self) -> AsyncIterator[TerminalEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False
