"""
abtest_sdk.tier1_runtime.clock
────────────────────────────────
Mockable time source. Everything in the SDK that reads the time or waits on a
timer goes through a Clock, so rate-limit waits, retry backoff, session
expiry and the periodic sender are fully controllable in tests.

``VirtualClock`` never touches the wall clock: ``sleep()`` parks the caller
until a test calls ``advance()`` past its deadline.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Callable


# ── Clock implementation ───────────────────────────────────────────────────

class Clock:
    """Mockable clock. Override _now_fn to control time in tests."""

    def __init__(self, now_fn: Callable[[], datetime] | None = None) -> None:
        self._now_fn = now_fn or (lambda: datetime.now(tz=timezone.utc))

    def now(self) -> datetime:
        """Return the current UTC datetime."""
        return self._now_fn()

    def timestamp(self) -> float:
        """Return the current Unix timestamp (float seconds)."""
        return self.now().timestamp()

    def timestamp_ms(self) -> int:
        """Return the current Unix timestamp in milliseconds."""
        return int(self.timestamp() * 1000)

    def utc_offset_minutes(self) -> int:
        """Minutes to add to local time to get UTC (JavaScript's getTimezoneOffset)."""
        offset = self.now().astimezone().utcoffset() or timedelta(0)
        return -int(offset.total_seconds() // 60)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0))

    def freeze(self, dt: datetime) -> "Clock":
        """Return a new Clock frozen at the given datetime."""
        return Clock(now_fn=lambda: dt)


class VirtualClock(Clock):
    """
    Deterministic clock for tests.

    Usage::

        clock = VirtualClock()
        task = asyncio.create_task(limiter.check_limit())
        await clock.advance(60)
        await task
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._t = (start or datetime(2025, 1, 1, tzinfo=timezone.utc)).timestamp()
        self._waiters: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()
        self.sleeps: list[float] = []
        super().__init__(now_fn=lambda: datetime.fromtimestamp(self._t, tz=timezone.utc))

    def utc_offset_minutes(self) -> int:
        return 0

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (self._t + seconds, next(self._seq), fut))
        await fut

    def set(self, dt: datetime) -> None:
        """Jump to *dt* without waking sleepers (for expiry checks)."""
        self._t = dt.timestamp()

    def shift(self, seconds: float) -> None:
        """Move time forward without waking sleepers."""
        self._t += seconds

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking every sleeper whose deadline passes."""
        target = self._t + seconds
        await _settle()
        while self._waiters and self._waiters[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._waiters)
            self._t = max(self._t, deadline)
            if not fut.done():
                fut.set_result(None)
            await _settle()
        self._t = target
        await _settle()

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._waiters if not fut.done())


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── Module-level singleton ─────────────────────────────────────────────────

_clock = Clock()


def get_clock() -> Clock:
    """Return the global clock instance."""
    return _clock


def set_clock(clock: Clock) -> None:
    """Replace the global clock (use in tests)."""
    global _clock
    _clock = clock


def now() -> datetime:
    """Return the current UTC datetime."""
    return _clock.now()


def timestamp() -> float:
    """Return the current Unix timestamp."""
    return _clock.timestamp()


def timestamp_ms() -> int:
    """Return the current Unix timestamp in milliseconds."""
    return _clock.timestamp_ms()


__all__ = [
    "Clock", "VirtualClock", "get_clock", "set_clock", "now", "timestamp", "timestamp_ms",
]
