"""
abtest_sdk.tier3_platform.reporter
────────────────────────────────────
Reliable event delivery. Assignments and impressions become events, events go
through the rate limiter into the pending queue, and a periodic batch sender
drains the queue to the collector.

Batch sender tick (every ``batch_interval`` seconds):
  - skip while a send is in flight or the queue is empty
  - after ``max_consecutive_failures`` failed batches: stop ticking, wait
    ``failure_cooldown`` seconds, reset the failure count, tick again
  - otherwise send the ``batch_size`` oldest events; success removes exactly
    that batch, failure leaves the queue untouched

Page visibility: hidden → snapshot the queue to storage and stop the sender;
visible → drop the snapshot and restart the sender.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from pydantic_core import PydanticSerializationError

from abtest_sdk.tier0_core import metrics
from abtest_sdk.tier0_core.config import ABTestConfig, first_non_empty
from abtest_sdk.tier0_core.errors import ABTestError, ValidationError
from abtest_sdk.tier0_core.identity import IdentityProvider
from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock
from abtest_sdk.tier1_runtime.ratelimit import SlidingWindowRateLimiter
from abtest_sdk.tier1_runtime.scheduler import DelayedCall, PeriodicTask, Scheduler
from abtest_sdk.tier1_runtime.validate import require_fields, validate_input
from abtest_sdk.tier2_reliability.circuit import CircuitBreaker, CircuitBreakerConfig
from abtest_sdk.tier2_reliability.dedup import EventDeduplicator
from abtest_sdk.tier2_reliability.queue import QueueManager
from abtest_sdk.tier2_reliability.storage import KeyValueStore, MemoryStore
from abtest_sdk.tier3_platform.api_client import EventsClient
from abtest_sdk.tier3_platform.assignments import CONTROL_VARIANT, Assignment, AssignmentManager
from abtest_sdk.tier3_platform.events import Event, PageContext, clean_path, iso_timestamp

logger = get_logger(__name__)

SENDER_TASK = "batch_sender"
MAINTENANCE_TASK = "maintenance"


class EventReporter:
    """
    Usage::

        reporter = EventReporter(config, identity, assignments, client,
                                 store=store, page=page, clock=clock)
        reporter.start()
        await reporter.track_assignment({"test_id": "AB1", "type": "test",
                                         "mode": "forced", "page_group": "global",
                                         "assigned_variant": "1"})
        reporter.on_hidden()
    """

    def __init__(
        self,
        config: ABTestConfig,
        identity: IdentityProvider,
        assignments: AssignmentManager,
        client: EventsClient,
        *,
        store: KeyValueStore | None = None,
        page: PageContext | None = None,
        clock: Clock | None = None,
        scheduler: Scheduler | None = None,
        queue: QueueManager | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
        deduplicator: EventDeduplicator | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._config = config
        self._identity = identity
        self._assignments = assignments
        self._client = client
        self._page = page or PageContext()
        self._clock = clock or get_clock()
        self._scheduler = scheduler or Scheduler(self._clock)
        self._queue = queue or QueueManager(store if store is not None else MemoryStore())
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            config.rate_limit_max_requests, config.rate_limit_window, self._clock
        )
        self._dedup = deduplicator or EventDeduplicator(config.dedup_expiry, self._clock)
        self._breaker = breaker or CircuitBreaker(
            CircuitBreakerConfig(
                failure_threshold=config.max_consecutive_failures,
                recovery_timeout=config.failure_cooldown,
                name=SENDER_TASK,
            ),
            self._clock,
        )
        self._sender: PeriodicTask | None = None
        self._maintenance: PeriodicTask | None = None
        self._resume_call: DelayedCall | None = None
        self._is_processing = False
        self._visible = True
        self._started = False

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def queue(self) -> QueueManager:
        return self._queue

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def deduplicator(self) -> EventDeduplicator:
        return self._dedup

    @property
    def failed_attempts(self) -> int:
        return self._breaker.failure_count

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def is_sending(self) -> bool:
        """True while the periodic batch sender is scheduled."""
        return self._sender is not None and self._sender.is_running

    @property
    def shop_domain(self) -> str:
        return first_non_empty(self._config.shop_id, self._page.shop, self._page.hostname)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        self._sender = self._scheduler.every(SENDER_TASK, self._config.batch_interval, self.process_queue)
        self._maintenance = self._scheduler.every(
            MAINTENANCE_TASK, self._config.cleanup_interval, self.run_maintenance
        )
        self._started = True
        if self._visible and not self._breaker.is_open:
            self._sender.start()
        self._maintenance.start()
        logger.info("reporter.started", batch_interval=self._config.batch_interval)

    def stop(self) -> None:
        for task in (self._sender, self._maintenance):
            if task is not None:
                task.cancel()
        if self._resume_call is not None:
            self._resume_call.cancel()
            self._resume_call = None
            # a restart begins with a closed breaker since no resume is pending
            self._breaker.reset()
        self._started = False
        logger.info("reporter.stopped", pending=len(self._queue))

    def on_hidden(self) -> None:
        """Page hidden: snapshot pending events and stop sending."""
        self._visible = False
        self._queue.persist_queue()
        if self._sender is not None:
            self._sender.cancel()
        logger.info("reporter.hidden", pending=len(self._queue))

    def on_visible(self) -> None:
        """Page visible again: the in-memory queue is current, resume sending."""
        self._visible = True
        self._queue.discard_snapshot()
        if self._started and self._sender is not None and not self._breaker.is_open:
            self._sender.restart()
        logger.info("reporter.visible", pending=len(self._queue))

    # ── Batch sender ─────────────────────────────────────────────────────────

    def _pause_sender(self) -> None:
        if self._sender is not None:
            self._sender.cancel()
        self._breaker.trip()
        metrics.circuit_trips().inc()
        self._resume_call = self._scheduler.call_later(
            "resume_sender", self._breaker.recovery_timeout, self._resume_sender
        )

    def _resume_sender(self) -> None:
        self._breaker.reset()
        self._resume_call = None
        if self._started and self._visible and self._sender is not None:
            self._sender.restart()
        logger.info("reporter.sender_resumed", pending=len(self._queue))

    async def process_queue(self) -> None:
        """One batch-sender tick."""
        if self._is_processing or not self._queue or self._breaker.is_open:
            return
        if self._breaker.should_trip:
            self._pause_sender()
            return

        self._is_processing = True
        batch = self._queue.get_batch(self._config.batch_size)
        started = self._clock.timestamp()
        try:
            await self.send_events(batch)
            self._queue.remove_batch(len(batch))
            self._breaker.record_success()
            metrics.batches_sent().inc()
            metrics.delivery_seconds().observe(self._clock.timestamp() - started)
            logger.info("delivery.batch_sent", count=len(batch), remaining=len(self._queue))
        except ABTestError as exc:
            self._breaker.record_failure()
            metrics.batches_failed().inc()
            logger.warning(
                "delivery.batch_failed",
                code=exc.code,
                error=str(exc),
                failures=self._breaker.failure_count,
                pending=len(self._queue),
            )
        except Exception as exc:
            # unexpected sender errors still count toward the breaker
            self._breaker.record_failure()
            metrics.batches_failed().inc()
            logger.exception(
                "delivery.batch_failed",
                code="unexpected_error",
                error=str(exc),
                failures=self._breaker.failure_count,
                pending=len(self._queue),
            )
        finally:
            self._is_processing = False
            metrics.queue_depth().set(len(self._queue))

    async def send_events(self, events: Sequence[dict[str, Any]]) -> Any:
        ids = self._identity.get_tracking_ids()
        if not ids.user_id or not ids.session_id:
            raise ValidationError(user_message="Missing user or session ID.")
        return await self._identity.with_retry(
            lambda: self._client.post_events(events),
            max_retries=self._config.retry_attempts,
        )

    def run_maintenance(self) -> None:
        removed = self._dedup.cleanup()
        expired = self._assignments.cleanup()
        logger.info("reporter.maintenance", dedup_removed=removed, assignments_expired=expired)

    # ── Event construction ───────────────────────────────────────────────────

    def create_event_payload(
        self,
        event_name: str,
        event_type: str,
        event_data: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        ids = self._identity.get_tracking_ids()
        if not ids.user_id or not ids.session_id:
            raise ValidationError(user_message="Missing user or session ID.")
        test_assignments = {
            a.test_id: a.to_pixel_format() for a in self._assignments.get_all_assignments()
        }
        return {
            "type": event_type,
            "data": {
                "session_id": ids.session_id,
                "user_id": ids.user_id,
                "event_name": event_name,
                "event_type": event_type,
                "client_timestamp": iso_timestamp(self._clock.timestamp()),
                "timezone_offset": self._clock.utc_offset_minutes(),
                "event_data": {
                    **(event_data or {}),
                    "test_assignments": test_assignments,
                    "path": clean_path(self._page.path),
                    "template": self._page.template,
                },
            },
        }

    async def queue_event(self, event: Mapping[str, Any]) -> dict[str, Any]:
        """Validate, wait for the rate limiter, append. Returns the queued payload."""
        validated = validate_input(Event, event)
        try:
            payload = validated.model_dump(mode="json")
        except PydanticSerializationError as exc:
            raise ValidationError(
                user_message=f"Event data is not JSON serializable: {exc}"
            ) from exc
        await self._rate_limiter.check_limit()
        self._queue.add(payload)
        metrics.events_queued(event_name=validated.data.event_name).inc()
        metrics.queue_depth().set(len(self._queue))
        logger.debug("event.queued", event_name=validated.data.event_name, pending=len(self._queue))
        return payload

    # ── Tracking API ─────────────────────────────────────────────────────────

    def _assignment_fields(self, assignment: Assignment) -> dict[str, Any]:
        return {
            "test_id": assignment.test_id,
            "assigned_variant": assignment.assigned_variant,
            "tested_variant": assignment.tested_variant,
            "page_group": assignment.page_group,
            "shop_domain": self.shop_domain,
            "experiment_name": assignment.name,
        }

    async def report_assignment(self, assignment: Assignment) -> None:
        """Enqueue ``test_assignment`` then a deduplicated ``test_impression``."""
        event = self.create_event_payload("test_assignment", "system", {
            **self._assignment_fields(assignment),
            "assignment_type": assignment.type,
            "assignment_mode": assignment.mode,
        })
        await self.queue_event(event)
        await self.track_impression(assignment)

    async def track_impression(self, assignment: Assignment) -> bool:
        """Enqueue ``test_impression`` unless an identical one is inside the dedup window."""
        event = self.create_event_payload("test_impression", "test", self._assignment_fields(assignment))
        if self._dedup.is_duplicate(event):
            metrics.duplicates_suppressed().inc()
            logger.debug("event.duplicate_impression", test_id=assignment.test_id)
            return False
        await self.queue_event(event)
        self._dedup.mark_processed(event)
        return True

    async def track_assignment(self, fields: Mapping[str, Any]) -> Assignment:
        """
        Record an externally made assignment. Returns the stored assignment, or
        the existing one untouched when the test already has a valid assignment.
        """
        require_fields(fields, ["test_id", "type", "mode", "page_group"], "Assignment")
        test_id = str(fields["test_id"])
        existing = self._assignments.get_assignment(test_id)
        if existing is not None:
            logger.info("assignment.exists", test_id=test_id, assigned_variant=existing.assigned_variant)
            return existing

        data = {
            **fields,
            "assigned_variant": first_non_empty(
                fields.get("assigned_variant"), fields.get("variant"), default=CONTROL_VARIANT
            ),
        }
        assignment = self._assignments.set_assignment(test_id, data)
        await self.report_assignment(assignment)
        return assignment


__all__ = ["EventReporter", "SENDER_TASK", "MAINTENANCE_TASK"]
