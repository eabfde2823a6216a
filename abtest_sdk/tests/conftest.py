"""
abtest_sdk test configuration.

All tests run against in-memory storage, a virtual clock and a fake collector
transport — no network, no wall-clock waits.
"""
from __future__ import annotations

import json
import os
import random

import httpx
import pytest

# ── Force in-process backends for all tests ───────────────────────────────
# These must be set before any abtest_sdk modules are imported.

os.environ.setdefault("ABTEST_ENV", "test")
os.environ.setdefault("ABTEST_SERVICE_NAME", "test-service")
os.environ.setdefault("ABTEST_STORAGE_BACKEND", "memory")
os.environ.setdefault("ABTEST_ERROR_BACKEND", "none")
os.environ.setdefault("ABTEST_LOG_FORMAT", "console")


# ── Fixtures ───────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def reset_module_singletons():
    """
    Reset cached config, storage provider and system between tests so no
    state bleeds from one test into the next.
    """
    from abtest_sdk import system as _system
    from abtest_sdk.tier0_core.config import _reset_config
    from abtest_sdk.tier2_reliability.storage import _reset_provider

    _reset_config()
    _reset_provider()
    yield
    _system._system = None
    _reset_config()
    _reset_provider()


@pytest.fixture
def store():
    from abtest_sdk.tier2_reliability.storage import MemoryStore
    return MemoryStore()


@pytest.fixture
def clock():
    from abtest_sdk.tier1_runtime.clock import VirtualClock
    return VirtualClock()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def mock_identity_provider():
    """Return a fresh MockIdentityProvider."""
    from abtest_sdk.tier0_core.identity import MockIdentityProvider
    return MockIdentityProvider()


@pytest.fixture
def config():
    from abtest_sdk.tier0_core.config import ABTestConfig
    return ABTestConfig(
        api_endpoint="https://collector.example.com/api",
        api_key="test-key",
        shop_id="shop-1",
    )


class FakeCollector:
    """httpx transport handler that records every batch it receives."""

    def __init__(self) -> None:
        self.status_code = 200
        self.requests: list[httpx.Request] = []
        self.batches: list[list[dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.batches.append(json.loads(request.content))
        if self.status_code >= 400:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        return httpx.Response(self.status_code, json={"received": len(self.batches[-1])})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def collector():
    return FakeCollector()


@pytest.fixture
def events_client(config, collector):
    from abtest_sdk.tier3_platform.api_client import EventsClient
    return EventsClient.from_config(config, transport=collector.transport)
