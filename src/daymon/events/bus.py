# src/daymon/events/bus.py

from __future__ import annotations

"""
In-memory event bus for Server-Sent-Events subscribers.

Best-effort live fan-out:
- no buffering for late subscribers, no replay
- a subscriber whose write fails is dropped; the others still get the event
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ":\n\n"
DEFAULT_QUEUE_SIZE = 256


class SubscriptionClosed(Exception):
    pass


def format_sse(event_type: str, payload: dict[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: {event_type}\ndata: {data}\n\n"


class Subscription:
    """One open stream. Frames are queued and consumed by the HTTP response."""

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def write(self, frame: str) -> None:
        """Raises SubscriptionClosed or asyncio.QueueFull when the peer cannot take more."""
        if self.closed:
            raise SubscriptionClosed("subscription closed")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Pending frames are dropped; the sentinel must fit.
        while not self._queue.empty():
            with contextlib.suppress(asyncio.QueueEmpty):
                self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


class EventBus:
    def __init__(self) -> None:
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> Subscription:
        sub = Subscription(maxsize=maxsize)
        # Comment frame confirms the channel is live before any event fires.
        sub.write(KEEPALIVE_FRAME)
        self._subscribers.add(sub)
        logger.debug("SSE subscriber added (total=%d)", len(self._subscribers))
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscribers.discard(sub)
        sub.close()
        logger.debug("SSE subscriber removed (total=%d)", len(self._subscribers))

    def emit(self, event_type: str, payload: dict[str, Any]) -> int:
        """Write one event to every subscriber. Returns how many accepted it."""
        frame = format_sse(event_type, payload)
        delivered = 0
        for sub in list(self._subscribers):
            try:
                sub.write(frame)
                delivered += 1
            except Exception as e:
                logger.info("Dropping SSE subscriber after failed write: %r", e)
                self._subscribers.discard(sub)
                sub.close()
        return delivered

    def close_all(self) -> None:
        for sub in list(self._subscribers):
            self.unsubscribe(sub)
