"""Async event bus bridging transport callbacks to consumer loops.

The session client publishes typed events from inside the connection's
reader callback. The EventBus queues them for a consumer (the console
client, or a test) to drain.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from tether.adapters.events import TetherEvent

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging connection callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TetherEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def publish(self, event: TetherEvent) -> None:
        """Queue *event* without blocking; drop it if the queue is full."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[TetherEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
