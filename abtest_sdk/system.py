"""
abtest_sdk.system
──────────────────
Composition root. Builds exactly one of each collaborator for a page instance
and owns their lifecycle:

    system = init_system(config, tenant, page)   # construct (idempotent)
    await system.initialize()                    # bucket, report, announce
    system.start()                               # batch sender, maintenance, activity
    system.set_visibility(False)                 # page hidden
    system.stop()

``get_system()`` returns the process-wide instance once ``init_system`` has
run; ``_reset_system()`` stops and forgets it (tests).
"""
from __future__ import annotations

import random

import httpx

from abtest_sdk.tier0_core.config import ABTestConfig, get_config
from abtest_sdk.tier0_core.errors import ConfigurationError
from abtest_sdk.tier0_core.identity import IdentityProvider, TrackingIdentity
from abtest_sdk.tier0_core.logging import bind_context, clear_context, get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock
from abtest_sdk.tier1_runtime.retry import RetryConfig
from abtest_sdk.tier1_runtime.scheduler import PeriodicTask, Scheduler
from abtest_sdk.tier2_reliability import storage
from abtest_sdk.tier2_reliability.storage import CookieJar, KeyValueStore
from abtest_sdk.tier3_platform.api_client import EventsClient
from abtest_sdk.tier3_platform.assignments import Assignment, AssignmentManager
from abtest_sdk.tier3_platform.events import DataLayer, EventBus, PageContext
from abtest_sdk.tier3_platform.experiments import ExperimentManager, TenantSettings
from abtest_sdk.tier3_platform.reporter import EventReporter

logger = get_logger(__name__)

ACTIVITY_TASK = "activity"


class ABTestSystem:
    def __init__(
        self,
        config: ABTestConfig | None = None,
        tenant: TenantSettings | None = None,
        page: PageContext | None = None,
        *,
        store: KeyValueStore | None = None,
        cookies: CookieJar | None = None,
        clock: Clock | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rng: random.Random | None = None,
        event_bus: EventBus | None = None,
        identity: IdentityProvider | None = None,
        client: EventsClient | None = None,
    ) -> None:
        self.config = config or get_config()
        self.tenant = tenant or TenantSettings()
        self.page = page or PageContext()
        self.clock = clock or get_clock()
        self.store = store if store is not None else storage.get_provider()
        self.cookies = cookies if cookies is not None else CookieJar(
            self.page.hostname, self.page.is_https, self.clock
        )
        self.event_bus = event_bus if event_bus is not None else DataLayer()
        self.scheduler = Scheduler(self.clock)

        self.identity = identity or TrackingIdentity(
            self.store,
            self.cookies,
            clock=self.clock,
            session_timeout=self.config.session_timeout,
            retry_config=RetryConfig(
                max_retries=self.config.retry_attempts,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                jitter=self.config.retry_jitter,
                timeout=self.config.retry_timeout,
            ),
        )
        self.assignments = AssignmentManager(self.store, clock=self.clock, ttl=self.config.assignment_ttl)
        self.client = client or EventsClient.from_config(self.config, transport=transport)
        self.reporter = EventReporter(
            self.config,
            self.identity,
            self.assignments,
            self.client,
            store=self.store,
            page=self.page,
            clock=self.clock,
            scheduler=self.scheduler,
        )
        self.experiments = ExperimentManager(
            self.assignments,
            self.tenant,
            self.reporter,
            event_bus=self.event_bus,
            rng=rng,
        )
        self._activity: PeriodicTask | None = None
        self._visible = True
        self.initialized = False

    async def initialize(self) -> bool:
        """Bucket every page-group and report new assignments. False when disabled or failed."""
        if not self.tenant.enabled:
            logger.info("system.disabled")
            return False
        ids = self.identity.get_tracking_ids()
        bind_context(user_id=ids.user_id, session_id=ids.session_id)
        self.initialized = await self.experiments.initialize()
        return self.initialized

    def start(self) -> None:
        self.reporter.start()
        self._activity = self.scheduler.every(
            ACTIVITY_TASK, self.config.activity_interval, self.identity.record_activity
        )
        if self._visible:
            self._activity.start()
        logger.info("system.started")

    def stop(self) -> None:
        self.reporter.stop()
        self.scheduler.shutdown()
        clear_context()
        logger.info("system.stopped")

    def set_visibility(self, visible: bool) -> None:
        self._visible = visible
        if visible:
            self.identity.on_visible()
            self.reporter.on_visible()
            if self._activity is not None:
                self._activity.restart()
        else:
            self.reporter.on_hidden()
            if self._activity is not None:
                self._activity.cancel()

    def assignments_for_page(self) -> list[Assignment]:
        return self.experiments.assignments_for_page(self.page)


# ── Process-wide instance ─────────────────────────────────────────────────────

_system: ABTestSystem | None = None


def init_system(*args, **kwargs) -> ABTestSystem:
    """Build the process-wide system, or return the one already built."""
    global _system
    if _system is None:
        _system = ABTestSystem(*args, **kwargs)
    return _system


def get_system() -> ABTestSystem:
    if _system is None:
        raise ConfigurationError(user_message="ABTestSystem not initialized; call init_system() first.")
    return _system


def _reset_system() -> None:
    """For tests — stop and forget the process-wide system."""
    global _system
    if _system is not None:
        try:
            _system.stop()
        except RuntimeError as exc:  # event loop already closed
            logger.debug("system.reset_stop_failed", error=str(exc))
    _system = None


__all__ = ["ABTestSystem", "init_system", "get_system"]
