"""
abtest_sdk.tier0_core.identity
─────────────────────────────────
Tracking identity: a durable user id and a session id that rotates after
30 minutes of inactivity. Both are mirrored into durable storage and a
cross-subdomain cookie. Once resolved for a page instance the ids never
change; a rotation triggered later (page becoming visible after a long
pause) is written to storage for the next page load only.

The provider also owns the generic retry-with-timeout executor the delivery
pipeline sends through.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from abtest_sdk.tier0_core.config import first_non_empty
from abtest_sdk.tier0_core.errors import StorageError
from abtest_sdk.tier0_core.ids import new_uuid4
from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock
from abtest_sdk.tier1_runtime.retry import RetryConfig, with_retry
from abtest_sdk.tier2_reliability.storage import CookieJar, KeyValueStore

T = TypeVar("T")

logger = get_logger(__name__)


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrackingIds:
    user_id: str
    session_id: str


@dataclass(frozen=True)
class IdentityKeys:
    user_id: str = "pg_user_id"
    session_id: str = "pg_session_id"
    last_activity: str = "hw-tracking-last-activity"
    user_cookie_days: float = 365
    session_cookie_days: float = 1


# ── Provider protocol ─────────────────────────────────────────────────────────

@runtime_checkable
class IdentityProvider(Protocol):
    def get_tracking_ids(self) -> TrackingIds: ...

    async def with_retry(self, operation: Callable[[], Awaitable[T]], **overrides: Any) -> T: ...

    def record_activity(self) -> None: ...

    def on_visible(self) -> bool: ...


# ── Storage-backed provider ───────────────────────────────────────────────────

class TrackingIdentity:
    """
    Resolves ids from storage at construction time.

    Usage::

        identity = TrackingIdentity(store, CookieJar("shop.example.com"))
        ids = identity.get_tracking_ids()
        await identity.with_retry(lambda: client.post_events(batch), max_retries=5)
    """

    def __init__(
        self,
        store: KeyValueStore,
        cookies: CookieJar | None = None,
        *,
        clock: Clock | None = None,
        session_timeout: float = 30 * 60.0,
        retry_config: RetryConfig | None = None,
        keys: IdentityKeys | None = None,
        id_factory: Callable[[], str] = new_uuid4,
    ) -> None:
        self._store = store
        self._cookies = cookies
        self._clock = clock or get_clock()
        self._timeout_ms = int(session_timeout * 1000)
        self.retry_config = retry_config or RetryConfig()
        self._keys = keys or IdentityKeys()
        self._new_id = id_factory

        self._ids = TrackingIds(
            user_id=self._resolve_user_id(),
            session_id=self._resolve_session_id(),
        )
        self._sync_ids()
        logger.info("identity.initialized", user_id=self._ids.user_id, session_id=self._ids.session_id)

    # ── Resolution ───────────────────────────────────────────────────────────

    def _read(self, key: str) -> str | None:
        try:
            return self._store.get_item(key)
        except (OSError, StorageError) as exc:
            logger.error("identity.read_failed", key=key, error=str(exc))
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._store.set_item(key, value)
        except (OSError, StorageError) as exc:
            logger.error("identity.write_failed", key=key, error=str(exc))

    def _resolve_user_id(self) -> str:
        existing = first_non_empty(
            lambda: self._read(self._keys.user_id),
            lambda: self._cookies.get_cookie(self._keys.user_id) if self._cookies else None,
        )
        if existing:
            return existing
        user_id = self._new_id()
        logger.info("identity.user_created", user_id=user_id)
        return user_id

    def _last_activity_ms(self) -> int:
        raw = self._read(self._keys.last_activity)
        try:
            return int(raw) if raw else 0
        except ValueError:
            return 0

    def _session_expired(self, now_ms: int) -> bool:
        return now_ms - self._last_activity_ms() > self._timeout_ms

    def _resolve_session_id(self) -> str:
        now_ms = self._clock.timestamp_ms()
        session_id = self._read(self._keys.session_id)
        expired = self._session_expired(now_ms)
        if not session_id or session_id == "undefined" or expired:
            new_session = self._new_id()
            logger.info(
                "identity.session_created",
                session_id=new_session,
                reason="expired" if session_id else "missing",
            )
            self._write(self._keys.session_id, new_session)
            self._write(self._keys.last_activity, str(now_ms))
            return new_session
        return session_id

    def _sync_ids(self) -> None:
        self._sync_user_id(self._ids.user_id)
        self._sync_session_id(self._ids.session_id)

    def _sync_user_id(self, user_id: str) -> None:
        self._write(self._keys.user_id, user_id)
        if self._cookies is not None:
            self._cookies.set_cookie(self._keys.user_id, user_id, self._keys.user_cookie_days)

    def _sync_session_id(self, session_id: str) -> None:
        self._write(self._keys.session_id, session_id)
        if self._cookies is not None:
            self._cookies.set_cookie(self._keys.session_id, session_id, self._keys.session_cookie_days)

    # ── Activity ─────────────────────────────────────────────────────────────

    def record_activity(self) -> None:
        """Slide the session window forward."""
        self._write(self._keys.last_activity, str(self._clock.timestamp_ms()))

    def on_visible(self) -> bool:
        """
        Called when the page becomes visible again. Rotates the stored session
        if it expired while hidden. Returns True when a rotation happened; the
        ids of this instance are unchanged either way.
        """
        now_ms = self._clock.timestamp_ms()
        rotated = False
        if self._session_expired(now_ms):
            new_session = self._new_id()
            logger.info("identity.session_rotated", session_id=new_session)
            self._sync_session_id(new_session)
            rotated = True
        self._write(self._keys.last_activity, str(now_ms))
        return rotated

    # ── Public API ───────────────────────────────────────────────────────────

    def get_tracking_ids(self) -> TrackingIds:
        return self._ids

    async def with_retry(self, operation: Callable[[], Awaitable[T]], **overrides: Any) -> T:
        """Run *operation* under this provider's retry policy, with per-call overrides."""
        return await with_retry(
            operation,
            self.retry_config.merged(**overrides),
            sleep=self._clock.sleep,
        )


# ── Mock provider (tests) ─────────────────────────────────────────────────────

class MockIdentityProvider:
    """Fixed ids, retry policy without waits. Never touches storage."""

    def __init__(
        self,
        user_id: str = "mock-user-id",
        session_id: str = "mock-session-id",
        retry_config: RetryConfig | None = None,
    ) -> None:
        self._ids = TrackingIds(user_id=user_id, session_id=session_id)
        self.retry_config = retry_config or RetryConfig(base_delay=0, max_delay=0, jitter=0)
        self.sleeps: list[float] = []
        self.activity_count = 0

    def get_tracking_ids(self) -> TrackingIds:
        return self._ids

    def record_activity(self) -> None:
        self.activity_count += 1

    def on_visible(self) -> bool:
        return False

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    async def with_retry(self, operation: Callable[[], Awaitable[T]], **overrides: Any) -> T:
        return await with_retry(operation, self.retry_config.merged(**overrides), sleep=self._sleep)


__all__ = [
    "TrackingIds", "IdentityKeys", "IdentityProvider",
    "TrackingIdentity", "MockIdentityProvider",
]
