# src/daymon/nudge/queue.py

from __future__ import annotations

"""
Serialized nudge delivery.

Near-simultaneous completions must not interleave their messages in the same
companion-app interaction, so every nudge goes through one FIFO drained by a
single task, with a fixed gap between consecutive sends.
"""

import asyncio
import logging
from collections import deque

from ..core.clock import SystemClock
from ..core.ports import Clock, Nudger
from ..tasks.task_models import NudgeOptions

logger = logging.getLogger(__name__)

NUDGE_GAP_SECONDS = 3.0


class NudgeQueue:
    def __init__(
            self,
            nudger: Nudger,
            *,
            gap_seconds: float = NUDGE_GAP_SECONDS,
            clock: Clock | None = None,
    ) -> None:
        self._nudger = nudger
        self._gap = float(gap_seconds)
        self._clock = clock or SystemClock()
        self._items: deque[NudgeOptions] = deque()
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def pending(self) -> int:
        return len(self._items)

    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def enqueue(self, options: NudgeOptions) -> None:
        self._items.append(options)
        logger.debug("Nudge queued task_id=%s (pending=%d)", options.task_id, len(self._items))
        if not self.draining:
            self._drain_task = asyncio.get_running_loop().create_task(self._drain(), name="nudge-drain")

    async def drain(self) -> None:
        """Wait until everything queued so far has been sent."""
        while self.draining:
            task = self._drain_task
            assert task is not None
            await asyncio.shield(task)

    def cancel(self) -> None:
        """Drop queued nudges and stop the drain loop (shutdown)."""
        self._items.clear()
        task, self._drain_task = self._drain_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _drain(self) -> None:
        while self._items:
            options = self._items.popleft()
            await self._send(options)
            if self._items:
                await self._clock.sleep(self._gap)

    async def _send(self, options: NudgeOptions) -> None:
        try:
            # Nudgers block on OS automation; keep the loop responsive.
            await asyncio.to_thread(self._nudger.send, options)
        except Exception:
            logger.exception("Nudge delivery failed task_id=%s", options.task_id)
