"""Bounded event channel between a completion task and one HTTP client.

The producer suspends while the channel is full. Once the consumer goes
away the channel is closed: pending events are discarded, a suspended
send is released, and later sends return immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from chatrelay.schemas.streaming import OutboundEvent

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 32

_FINISHED = object()


class EventChannel:
    """FIFO of outbound events with a fixed capacity."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=capacity)
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: OutboundEvent) -> bool:
        """Queue an event, waiting for room.

        Returns:
            False if the consumer is gone and the event was dropped.
        """
        if self._closed:
            return False
        await self._queue.put(event)
        return not self._closed

    async def finish(self) -> None:
        """Mark the end of the event sequence for the consumer. Never waits."""
        self._finished = True
        if not self._closed and not self._queue.full():
            self._queue.put_nowait(_FINISHED)

    def close(self) -> None:
        """Detach the consumer. Called when the response ends."""
        if self._closed:
            return
        self._closed = True
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        if dropped:
            logger.debug("Dropped %d undelivered events", dropped)

    async def __aiter__(self) -> AsyncIterator[OutboundEvent]:
        while not self._closed:
            if self._finished and self._queue.empty():
                return
            item = await self._queue.get()
            if item is _FINISHED:
                return
            yield item  # type: ignore[misc]
