"""
abtest_sdk.tier1_runtime.ratelimit
───────────────────────────────────────
Sliding-window rate limiting for outbound tracking calls. The window is
recomputed on every check by discarding timestamps older than the window;
there is no background sweep.

Default: 50 requests per 60 seconds.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass

from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock

logger = get_logger(__name__)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: float | None = None   # seconds until the oldest request leaves the window


class SlidingWindowRateLimiter:
    """
    In-process sliding window.

    Usage::

        limiter = SlidingWindowRateLimiter(max_requests=50, window=60)
        await limiter.check_limit()   # suspends while the window is full
    """

    def __init__(
        self,
        max_requests: int = 50,
        window: float = 60.0,
        clock: Clock | None = None,
    ) -> None:
        self._max = max_requests
        self._window = window
        self._clock = clock or get_clock()
        self._requests: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self._window:
            self._requests.popleft()

    def peek(self) -> RateLimitResult:
        """Report whether a request would be admitted right now, without recording it."""
        now = self._clock.timestamp()
        self._prune(now)
        if len(self._requests) >= self._max:
            retry_after = self._window - (now - self._requests[0])
            return RateLimitResult(allowed=False, remaining=0, retry_after=retry_after)
        return RateLimitResult(allowed=True, remaining=self._max - len(self._requests))

    async def check_limit(self) -> bool:
        """Wait until the window has room, then record the request."""
        while True:
            result = self.peek()
            if result.allowed:
                break
            logger.info("ratelimit.waiting", retry_after=round(result.retry_after or 0, 3))
            await self._clock.sleep(result.retry_after or 0)
        self._requests.append(self._clock.timestamp())
        return True

    def __len__(self) -> int:
        return len(self._requests)


__all__ = ["RateLimitResult", "SlidingWindowRateLimiter"]
