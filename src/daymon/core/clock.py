# src/daymon/core/clock.py

from __future__ import annotations

"""
Clock and periodic "tick" helpers.

Every timer in daymon (reconciliation poll, health check) is a Ticker owned by
its component, with start()/stop() as the only lifecycle entry points. Ticker
sleeps through an injected Clock, so tests can drive it without real waits.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime

from .ports import Clock

logger = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now().astimezone()

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class Ticker:
    """
    Call an async callback every `interval` seconds.

    The next sleep starts only after the previous callback returned, so two
    ticks of the same Ticker never overlap. Callback errors are logged and the
    ticker keeps going.
    """

    def __init__(
            self,
            interval: float,
            callback: Callable[[], Awaitable[None]],
            *,
            clock: Clock | None = None,
            name: str = "ticker",
    ) -> None:
        self.interval = float(interval)
        self._callback = callback
        self._clock = clock or SystemClock()
        self._name = name
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self._name)

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _loop(self) -> None:
        while True:
            await self._clock.sleep(self.interval)
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s tick failed", self._name)
