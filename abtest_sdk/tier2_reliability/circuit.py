"""
abtest_sdk.tier2_reliability.circuit
────────────────────────────────────────
Consecutive-failure circuit breaker for the batch sender. Each batch that
exhausts its retries counts one failure; a success resets the count. Once the
count reaches the ceiling the breaker is tripped: the owner stops its
periodic sender and schedules ``reset()`` after the cooldown, so a down
collector never sees a tight retry loop.

States: CLOSED (sending) → OPEN (paused for the cooldown) → CLOSED.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 3      # consecutive failures before OPEN
    recovery_timeout: float = 60.0  # seconds spent OPEN before the owner resets
    name: str = "batch_sender"


class CircuitBreaker:
    """
    Usage::

        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
        if breaker.should_trip:
            breaker.trip()
            scheduler.call_later("resume", breaker.recovery_timeout, resume)
    """

    def __init__(self, config: CircuitBreakerConfig | None = None, clock: Clock | None = None) -> None:
        self._cfg = config or CircuitBreakerConfig()
        self._clock = clock or get_clock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self.trips = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def recovery_timeout(self) -> float:
        return self._cfg.recovery_timeout

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    @property
    def should_trip(self) -> bool:
        return self._failure_count >= self._cfg.failure_threshold

    def record_success(self) -> None:
        self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1

    def trip(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock.timestamp()
        self.trips += 1
        logger.warning(
            "circuit.opened",
            circuit=self._cfg.name,
            failures=self._failure_count,
            cooldown=self._cfg.recovery_timeout,
        )

    def reset(self) -> None:
        opened_at = self._opened_at
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        if opened_at is not None:
            logger.info(
                "circuit.closed",
                circuit=self._cfg.name,
                open_seconds=self._clock.timestamp() - opened_at,
            )


__all__ = ["CircuitState", "CircuitBreakerConfig", "CircuitBreaker"]
