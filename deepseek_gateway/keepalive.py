"""Background keep-alive pings that stop upstream tokens expiring when idle."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

LOG = logging.getLogger("deepseek-gateway.keepalive")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class KeepAliveScheduler:
    """Runs ``ping`` every ``interval_minutes`` on an asyncio task.

    ``start`` and ``stop`` are idempotent. A tick never raises: failures are
    logged and counted and the timer keeps going.
    """

    def __init__(
        self,
        ping: Callable[[], Awaitable[Any]],
        interval_minutes: float = 30.0,
        can_run: Optional[Callable[[], bool]] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ping = ping
        self.interval_minutes = interval_minutes
        self._can_run = can_run or (lambda: True)
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task[None]] = None
        self.last_ping: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.successes = 0
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.enabled:
            LOG.info("Keep-alive already running")
            return False
        if self.interval_minutes <= 0:
            LOG.info("Keep-alive disabled (interval=%s)", self.interval_minutes)
            return False
        if not self._can_run():
            LOG.warning("Cannot start keep-alive: no upstream token configured")
            return False
        self._task = asyncio.create_task(self._run(), name="keep-alive")
        LOG.info("Keep-alive started (ping every %s minutes)", self.interval_minutes)
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        LOG.info("Keep-alive stopped")

    async def _run(self) -> None:
        while True:
            await self.tick()
            await self._sleep(self.interval_minutes * 60)

    async def tick(self) -> bool:
        try:
            await self._ping()
        except Exception as exc:
            self.failures += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            LOG.error("Keep-alive ping failed: %s", self.last_error)
            return False
        self.successes += 1
        self.last_error = None
        self.last_ping = self._clock()
        LOG.info("Keep-alive ping successful at %s", self.last_ping.isoformat())
        return True

    def status(self) -> dict[str, Any]:
        minutes_since = None
        if self.last_ping is not None:
            minutes_since = int((self._clock() - self.last_ping).total_seconds() // 60)
        return {
            "enabled": self.enabled,
            "interval_minutes": self.interval_minutes,
            "last_ping": self.last_ping.isoformat() if self.last_ping else None,
            "minutes_since_last_ping": minutes_since,
            "successes": self.successes,
            "failures": self.failures,
            "last_error": self.last_error,
        }
