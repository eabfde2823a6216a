"""Tests for tier2_reliability modules."""
from __future__ import annotations

import pytest

from abtest_sdk.tier0_core.errors import ConfigurationError, StorageError
from abtest_sdk.tier2_reliability import storage
from abtest_sdk.tier2_reliability.circuit import CircuitBreaker, CircuitBreakerConfig, CircuitState
from abtest_sdk.tier2_reliability.dedup import EventDeduplicator, dedup_key
from abtest_sdk.tier2_reliability.queue import QUEUE_STORAGE_KEY, QueueManager
from abtest_sdk.tier2_reliability.storage import (
    CookieJar,
    FileStore,
    MemoryStore,
    read_json,
    registrable_domain,
    remove_key,
    write_json,
)


class BrokenStore(MemoryStore):
    """Store whose writes always fail, like a full or disabled local storage."""

    def set_item(self, key, value):
        raise OSError("quota exceeded")


def _event(session="s1", test_id="AB1", name="test_impression", ts="2025-01-01T00:00:00.000Z"):
    return {
        "type": "test",
        "data": {
            "session_id": session,
            "user_id": "u1",
            "event_name": name,
            "event_type": "test",
            "client_timestamp": ts,
            "event_data": {"test_id": test_id},
        },
    }


# ── storage ────────────────────────────────────────────────────────────────

class TestStorage:
    def test_memory_store_roundtrip(self):
        store = MemoryStore()
        store.set_item("k", "v")
        assert store.get_item("k") == "v"
        store.remove_item("k")
        assert store.get_item("k") is None

    def test_json_helpers(self, store):
        write_json(store, "map", {"AB1": {"assigned_variant": "1"}})
        assert read_json(store, "map") == {"AB1": {"assigned_variant": "1"}}
        assert read_json(store, "missing", default={}) == {}

    def test_corrupt_json_raises_storage_error(self, store):
        store.set_item("map", "{not json")
        with pytest.raises(StorageError):
            read_json(store, "map")

    def test_failed_write_raises_storage_error(self):
        with pytest.raises(StorageError):
            write_json(BrokenStore(), "map", {})

    def test_file_store_persists_across_instances(self, tmp_path):
        path = tmp_path / "state" / "store.json"
        FileStore(str(path)).set_item("pg_user_id", "u-1")
        assert FileStore(str(path)).get_item("pg_user_id") == "u-1"

    def test_corrupt_file_raises_storage_error(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            FileStore(str(path)).get_item("pg_user_id")
        with pytest.raises(StorageError):
            remove_key(FileStore(str(path)), "pg_user_id")

    def test_non_object_document_raises_storage_error(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(StorageError):
            FileStore(str(path)).set_item("k", "v")

    def test_provider_from_env(self, monkeypatch):
        monkeypatch.setenv("ABTEST_STORAGE_BACKEND", "memory")
        assert isinstance(storage.get_provider(), MemoryStore)
        assert storage.get_provider() is storage.get_provider()

    def test_unknown_backend_raises(self, monkeypatch):
        monkeypatch.setenv("ABTEST_STORAGE_BACKEND", "redis")
        with pytest.raises(ConfigurationError):
            storage.get_provider()


class TestCookies:
    @pytest.mark.parametrize("hostname,expected", [
        ("shop.example.com", "example.com"),
        ("a.b.example.co", "example.co"),
        ("localhost", "localhost"),
    ])
    def test_registrable_domain(self, hostname, expected):
        assert registrable_domain(hostname) == expected

    def test_cookie_expires(self, clock):
        jar = CookieJar("shop.example.com", clock=clock)
        jar.set_cookie("pg_session_id", "s-1", 1)
        assert jar.get_cookie("pg_session_id") == "s-1"
        clock.shift(24 * 60 * 60)
        assert jar.get_cookie("pg_session_id") is None

    def test_header_format(self, clock):
        jar = CookieJar("shop.example.com", secure=True, clock=clock)
        jar.set_cookie("pg_user_id", "u-1", 365)
        header = jar.headers()[0]
        assert header.startswith("pg_user_id=u-1; path=/; max-age=31536000")
        assert "SameSite=Lax" in header
        assert "domain=.example.com" in header
        assert header.endswith("; Secure")


# ── dedup ──────────────────────────────────────────────────────────────────

class TestDeduplicator:
    def test_key_format(self):
        assert dedup_key(_event()) == "s1:AB1:test_impression:2025-01-01T00:00:00.000Z"

    def test_marked_event_is_duplicate(self, clock):
        dedup = EventDeduplicator(clock=clock)
        assert dedup.is_duplicate(_event()) is False
        dedup.mark_processed(_event())
        assert dedup.is_duplicate(_event()) is True

    def test_different_timestamp_is_not_duplicate(self, clock):
        dedup = EventDeduplicator(clock=clock)
        dedup.mark_processed(_event())
        assert dedup.is_duplicate(_event(ts="2025-01-01T00:00:00.001Z")) is False

    def test_duplicate_only_within_window(self, clock):
        dedup = EventDeduplicator(expiry=1800, clock=clock)
        dedup.mark_processed(_event())
        clock.shift(1800)
        assert dedup.is_duplicate(_event()) is True
        clock.shift(1)
        assert dedup.is_duplicate(_event()) is False
        assert len(dedup) == 0

    def test_cleanup_sweeps_stale(self, clock):
        dedup = EventDeduplicator(expiry=60, clock=clock)
        dedup.mark_processed(_event(test_id="AB1"))
        clock.shift(61)
        dedup.mark_processed(_event(test_id="AB2"))
        assert dedup.cleanup() == 1
        assert len(dedup) == 1


# ── queue ──────────────────────────────────────────────────────────────────

class TestQueueManager:
    def test_fifo_batches(self, store):
        queue = QueueManager(store)
        for i in range(12):
            queue.add({"n": i})
        batch = queue.get_batch(10)
        assert [e["n"] for e in batch] == list(range(10))
        assert len(queue) == 12
        queue.remove_batch(len(batch))
        assert [e["n"] for e in queue.get_batch(10)] == [10, 11]

    def test_persist_only_when_non_empty(self, store):
        queue = QueueManager(store)
        assert queue.persist_queue() is False
        assert store.get_item(QUEUE_STORAGE_KEY) is None
        queue.add({"n": 1})
        assert queue.persist_queue() is True
        assert read_json(store, QUEUE_STORAGE_KEY) == [{"n": 1}]

    def test_adopts_and_clears_snapshot(self, store):
        write_json(store, QUEUE_STORAGE_KEY, [{"n": 1}, {"n": 2}])
        queue = QueueManager(store)
        assert len(queue) == 2
        assert store.get_item(QUEUE_STORAGE_KEY) is None

    def test_discard_snapshot(self, store):
        queue = QueueManager(store)
        queue.add({"n": 1})
        queue.persist_queue()
        queue.discard_snapshot()
        assert store.get_item(QUEUE_STORAGE_KEY) is None
        assert len(queue) == 1

    def test_persist_failure_keeps_memory_queue(self):
        queue = QueueManager(BrokenStore())
        queue.add({"n": 1})
        assert queue.persist_queue() is False
        assert len(queue) == 1

    def test_corrupt_file_store_starts_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json", encoding="utf-8")
        queue = QueueManager(FileStore(str(path)))
        assert len(queue) == 0
        queue.add({"n": 1})
        assert queue.persist_queue() is False
        queue.discard_snapshot()
        assert len(queue) == 1


# ── circuit ────────────────────────────────────────────────────────────────

class TestCircuitBreaker:
    def test_trips_after_threshold(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3), clock)
        for _ in range(2):
            breaker.record_failure()
        assert not breaker.should_trip
        breaker.record_failure()
        assert breaker.should_trip
        breaker.trip()
        assert breaker.state == CircuitState.OPEN
        assert breaker.trips == 1

    def test_success_resets_count(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3), clock)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        assert breaker.failure_count == 0

    def test_reset_closes(self, clock):
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, recovery_timeout=60), clock)
        breaker.record_failure()
        breaker.trip()
        assert breaker.is_open
        clock.shift(30)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert not breaker.is_open
        assert breaker.failure_count == 0
