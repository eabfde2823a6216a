"""
abtest_sdk.tier1_runtime.retry
───────────────────────────────────
Retry executor with exponential backoff, jitter and a per-attempt timeout.
Backed by Tenacity. Validation errors are never retried; everything else
(network failure, timeout, non-2xx) counts as a failed attempt and, once the
attempts are exhausted, the last error propagates.

Backoff before retry *n* (0-based):  min(base * 2**n + jitter, max)

Usage:
    result = await with_retry(lambda: client.post_events(batch), RetryConfig(max_retries=3))
"""
from __future__ import annotations

import asyncio
import dataclasses
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)
from tenacity.wait import wait_base

from abtest_sdk.tier0_core.errors import TransientDeliveryError, ValidationError
from abtest_sdk.tier0_core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0      # seconds
    max_delay: float = 30.0      # seconds
    jitter: float = 1.0          # max random seconds added before capping
    timeout: float = 10.0        # per-attempt bound, seconds

    def merged(self, **overrides: Any) -> "RetryConfig":
        """Return a copy with the non-None *overrides* applied."""
        return dataclasses.replace(
            self, **{k: v for k, v in overrides.items() if v is not None}
        )


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay after the 0-based *attempt* failed. Never exceeds *max_delay*."""
    return min(base_delay * (2 ** attempt) + rand() * jitter, max_delay)


class wait_capped_exponential(wait_base):
    """Tenacity wait strategy applying :func:`backoff_delay`."""

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        jitter: float,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.rand = rand

    def __call__(self, retry_state: RetryCallState) -> float:
        return backoff_delay(
            retry_state.attempt_number - 1,
            self.base_delay,
            self.max_delay,
            self.jitter,
            self.rand,
        )


def _is_retryable(exc: BaseException) -> bool:
    """Return True if the exception should be retried."""
    return not isinstance(exc, ValidationError)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry.attempt_failed",
        attempt=retry_state.attempt_number,
        wait=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error=str(exc),
    )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """
    Run *operation* until it succeeds or the attempts are exhausted.

    Each attempt races the operation against ``config.timeout``; a timeout is
    reported as :class:`TransientDeliveryError`. *sleep* is awaited between
    attempts, so a virtual clock makes the backoff instantaneous in tests.
    """
    cfg = config or RetryConfig()

    async def _attempt() -> T:
        try:
            return await asyncio.wait_for(operation(), timeout=cfg.timeout)
        except asyncio.TimeoutError as exc:
            raise TransientDeliveryError(
                "timeout",
                user_message=f"Operation timed out after {cfg.timeout}s",
            ) from exc

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(cfg.max_retries),
        wait=wait_capped_exponential(cfg.base_delay, cfg.max_delay, cfg.jitter, rand),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    ):
        with attempt:
            return await _attempt()
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryConfig", "backoff_delay", "wait_capped_exponential", "with_retry"]
