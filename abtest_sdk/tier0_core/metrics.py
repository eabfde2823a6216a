"""
abtest_sdk.tier0_core.metrics
───────────────────────────────
Counters, gauges, and histograms with standard naming and labels, plus the
delivery-pipeline metrics every reporter records into.

Minimal stack: prometheus-client
Exposition is left to the host process (prometheus_client.REGISTRY).
"""
from __future__ import annotations

import os
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram

# Standard labels applied to every metric
_DEFAULT_LABELS = ["service", "env"]
_SERVICE = os.getenv("ABTEST_SERVICE_NAME", "abtest")
_ENV = os.getenv("ABTEST_ENV", "development")
_DEFAULT_LABEL_VALUES = [_SERVICE, _ENV]


def _labels(extra: dict[str, str]) -> dict[str, str]:
    # prometheus-client refuses positional and keyword label values together
    return {**dict(zip(_DEFAULT_LABELS, _DEFAULT_LABEL_VALUES)), **extra}


def counter(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """
    Create a counter with standard labels.

    Usage:
        events_total = counter("abtest_events_total", "Events", ["event_name"])
        events_total(event_name="test_impression").inc()
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    c = Counter(name, description, all_labels)

    def _counter(**extra_labels: str) -> Counter:
        return c.labels(**_labels(extra_labels))

    return _counter


def gauge(name: str, description: str, labels: list[str] | None = None) -> Callable:
    """Create a gauge with standard labels."""
    all_labels = _DEFAULT_LABELS + (labels or [])
    g = Gauge(name, description, all_labels)

    def _gauge(**extra_labels: str) -> Gauge:
        return g.labels(**_labels(extra_labels))

    return _gauge


def histogram(
    name: str,
    description: str,
    labels: list[str] | None = None,
    buckets: tuple = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
) -> Callable:
    """
    Create a histogram with standard labels.

    Usage:
        started = clock.timestamp()
        await send(batch)
        delivery_seconds().observe(clock.timestamp() - started)
    """
    all_labels = _DEFAULT_LABELS + (labels or [])
    h = Histogram(name, description, all_labels, buckets=buckets)

    def _histogram(**extra_labels: str) -> Histogram:
        return h.labels(**_labels(extra_labels))

    return _histogram


# ── Pipeline metrics ──────────────────────────────────────────────────────────
# Registered on the default REGISTRY at import, once per process; every
# reporter instance shares them. Import only as abtest_sdk.tier0_core.metrics,
# a second import under another module path raises a duplicate-timeseries
# ValueError.

events_queued = counter(
    "abtest_events_queued_total", "Events appended to the pending queue", ["event_name"]
)
duplicates_suppressed = counter(
    "abtest_duplicates_suppressed_total", "Impressions dropped by the deduplicator"
)
batches_sent = counter("abtest_batches_sent_total", "Batches acknowledged by the collector")
batches_failed = counter("abtest_batches_failed_total", "Batches that exhausted their retries")
circuit_trips = counter("abtest_circuit_trips_total", "Times the batch sender was paused")
queue_depth = gauge("abtest_queue_depth", "Events waiting for delivery")
delivery_seconds = histogram("abtest_delivery_seconds", "Time spent delivering one batch")


__all__ = [
    "counter", "gauge", "histogram",
    "events_queued", "duplicates_suppressed", "batches_sent", "batches_failed",
    "circuit_trips", "queue_depth", "delivery_seconds",
]
