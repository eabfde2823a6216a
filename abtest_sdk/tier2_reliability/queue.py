"""
abtest_sdk.tier2_reliability.queue
─────────────────────────────────────
FIFO buffer of pending event payloads. Held in memory; durable storage is
touched only twice: on construction (adopt and clear a snapshot left by a
previous page instance) and in ``persist_queue()`` when the page is hidden.
"""
from __future__ import annotations

from typing import Any

from abtest_sdk.tier0_core.errors import StorageError
from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier2_reliability.storage import KeyValueStore, read_json, remove_key, write_json

logger = get_logger(__name__)

QUEUE_STORAGE_KEY = "pg_event_queue"


class QueueManager:
    def __init__(self, store: KeyValueStore, storage_key: str = QUEUE_STORAGE_KEY) -> None:
        self._store = store
        self._key = storage_key
        self._queue: list[dict[str, Any]] = []
        self._load_persisted()

    def _load_persisted(self) -> None:
        try:
            stored = read_json(self._store, self._key)
            if stored is None:
                return
            if isinstance(stored, list):
                self._queue.extend(e for e in stored if isinstance(e, dict))
            remove_key(self._store, self._key)
            logger.info("queue.adopted", count=len(self._queue))
        except StorageError as exc:
            logger.error("queue.load_failed", error=str(exc))

    def persist_queue(self) -> bool:
        """Snapshot the queue to durable storage. No-op when empty."""
        if not self._queue:
            return False
        try:
            write_json(self._store, self._key, self._queue)
            logger.info("queue.persisted", count=len(self._queue))
            return True
        except StorageError as exc:
            logger.error("queue.persist_failed", error=str(exc), count=len(self._queue))
            return False

    def discard_snapshot(self) -> None:
        """Forget a snapshot written on hide; the in-memory queue is still authoritative."""
        try:
            remove_key(self._store, self._key)
        except StorageError as exc:
            logger.error("queue.discard_failed", error=str(exc))

    def add(self, event: dict[str, Any]) -> None:
        self._queue.append(event)

    def get_batch(self, size: int = 10) -> list[dict[str, Any]]:
        """The *size* oldest events, left in place."""
        return self._queue[:size]

    def remove_batch(self, size: int) -> None:
        """Drop the *size* oldest events after a confirmed send."""
        del self._queue[:size]

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)


__all__ = ["QueueManager", "QUEUE_STORAGE_KEY"]
