"""
abtest_sdk.tier1_runtime.scheduler
────────────────────────────────────
Timer primitives on top of asyncio and the SDK Clock:

  - PeriodicTask  — fires a callback every *interval* seconds until cancelled;
                    each firing runs as its own task, so a slow callback never
                    delays the next tick (callbacks guard their own re-entry).
  - DelayedCall   — fires a callback once after *delay* seconds.
  - Scheduler     — owns every timer it created and cancels them together.

Driven by a VirtualClock in tests, no timer here ever waits on the wall clock.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable

from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock

logger = get_logger(__name__)

Callback = Callable[[], "Awaitable[Any] | Any"]


async def _invoke(name: str, fn: Callback) -> None:
    try:
        result = fn()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("scheduler.callback_failed", task=name, error=str(exc), exc_info=True)


class PeriodicTask:
    """Cancellable, restartable fixed-period timer."""

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callback,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.interval = interval
        self._fn = fn
        self._clock = clock or get_clock()
        self._loop_task: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run(), name=f"periodic:{self.name}"
        )

    def cancel(self) -> None:
        """Stop future ticks. A firing already in progress runs to completion."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

    def restart(self) -> None:
        self.cancel()
        self.start()

    async def _run(self) -> None:
        while True:
            await self._clock.sleep(self.interval)
            self.ticks += 1
            task = asyncio.get_running_loop().create_task(_invoke(self.name, self._fn))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)


class DelayedCall:
    """One-shot timer."""

    def __init__(
        self,
        name: str,
        delay: float,
        fn: Callback,
        clock: Clock | None = None,
    ) -> None:
        self.name = name
        self.delay = delay
        self._fn = fn
        self._clock = clock or get_clock()
        self._task: asyncio.Task | None = None
        self.fired = False

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "DelayedCall":
        if not self.pending:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name=f"delayed:{self.name}"
            )
        return self

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        await self._clock.sleep(self.delay)
        self.fired = True
        await _invoke(self.name, self._fn)


class Scheduler:
    """
    Factory and owner of timers sharing one clock.

    Usage::

        scheduler = Scheduler(clock)
        sender = scheduler.every("batch_sender", 0.1, reporter.process_queue)
        sender.start()
        scheduler.call_later("resume", 60, sender.start)
        scheduler.shutdown()
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self.clock = clock or get_clock()
        self._periodic: dict[str, PeriodicTask] = {}
        self._delayed: list[DelayedCall] = []

    def every(self, name: str, interval: float, fn: Callback) -> PeriodicTask:
        if name in self._periodic:
            self._periodic[name].cancel()
        task = PeriodicTask(name, interval, fn, self.clock)
        self._periodic[name] = task
        return task

    def call_later(self, name: str, delay: float, fn: Callback) -> DelayedCall:
        self._delayed = [d for d in self._delayed if d.pending]
        call = DelayedCall(name, delay, fn, self.clock).start()
        self._delayed.append(call)
        return call

    def get(self, name: str) -> PeriodicTask | None:
        return self._periodic.get(name)

    def shutdown(self) -> None:
        for task in self._periodic.values():
            task.cancel()
        for call in self._delayed:
            call.cancel()
        self._delayed.clear()


__all__ = ["PeriodicTask", "DelayedCall", "Scheduler"]
