"""
abtest_sdk.tier2_reliability.dedup
─────────────────────────────────────
Time-windowed event deduplication. An event is identified by
``session_id:test_id:event_name:client_timestamp``; a key marked within the
expiry window (default 30 minutes) is a duplicate. Stale entries are evicted
lazily on lookup and by the periodic ``cleanup()`` sweep.
"""
from __future__ import annotations

from typing import Any, Mapping

from abtest_sdk.tier1_runtime.clock import Clock, get_clock


def dedup_key(event: Mapping[str, Any]) -> str:
    """Build the dedup key from an event payload (``{"type", "data": {...}}``)."""
    data = event.get("data") or {}
    event_data = data.get("event_data") or {}
    test_id = data.get("test_id", event_data.get("test_id"))
    return ":".join(
        str(part) for part in (
            data.get("session_id"),
            test_id,
            data.get("event_name"),
            data.get("client_timestamp"),
        )
    )


class EventDeduplicator:
    def __init__(self, expiry: float = 30 * 60.0, clock: Clock | None = None) -> None:
        self._expiry = expiry
        self._clock = clock or get_clock()
        self._processed: dict[str, float] = {}  # key → marked_at

    def is_duplicate(self, event: Mapping[str, Any]) -> bool:
        key = dedup_key(event)
        marked_at = self._processed.get(key)
        if marked_at is None:
            return False
        if self._clock.timestamp() - marked_at > self._expiry:
            del self._processed[key]
            return False
        return True

    def mark_processed(self, event: Mapping[str, Any]) -> None:
        self._processed[dedup_key(event)] = self._clock.timestamp()

    def cleanup(self) -> int:
        """Drop every stale entry. Returns how many were removed."""
        now = self._clock.timestamp()
        stale = [k for k, t in self._processed.items() if now - t > self._expiry]
        for key in stale:
            del self._processed[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._processed)


__all__ = ["dedup_key", "EventDeduplicator"]
