"""Clock and periodic task primitives.

Everything time-dependent takes a Clock so tests can move time by hand,
and every background loop is a Ticker that can be started, paused, resumed
and cancelled.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog

logger = structlog.get_logger()


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, seconds: float = 0, *, days: float = 0, hours: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, days=days, hours=hours)
        return self._now


class Ticker:
    """Runs an async callback every `interval` seconds on the running loop."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Awaitable[object]]) -> None:
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: asyncio.Task[None] | None = None
        self._paused = False
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def paused(self) -> bool:
        return self._paused

    def start(self) -> None:
        """Arm the ticker. No-op if already running."""
        self._paused = False
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")

    async def stop(self) -> None:
        """Cancel the ticker and wait for it to exit."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def pause(self) -> None:
        self._paused = True
        await self.stop()

    def resume(self) -> None:
        if self._paused:
            self.start()

    async def tick(self) -> None:
        """Run the callback once. Errors are logged, never raised."""
        self.ticks += 1
        try:
            await self._callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("ticker_callback_failed", ticker=self.name)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()
