"""
abtest_sdk
──────────
Stable top-level exports. Import from here, not from sub-modules directly.
Every name exported here is part of the public API and subject to semver.
"""
from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier0_core.errors import (
    ABTestError,
    ValidationError,
    TransientDeliveryError,
    StorageError,
    ConfigurationError,
)
from abtest_sdk.tier0_core.config import get_config, ABTestConfig, first_non_empty
from abtest_sdk.tier0_core.identity import TrackingIdentity, TrackingIds, MockIdentityProvider
from abtest_sdk.tier0_core.metrics import counter, gauge, histogram

from abtest_sdk.tier1_runtime.clock import Clock, VirtualClock
from abtest_sdk.tier1_runtime.retry import RetryConfig, with_retry
from abtest_sdk.tier1_runtime.scheduler import Scheduler
from abtest_sdk.tier1_runtime.validate import validate_input
from abtest_sdk.tier1_runtime.serialize import serialize, deserialize

from abtest_sdk.tier2_reliability.storage import MemoryStore, FileStore, CookieJar
from abtest_sdk.tier2_reliability.queue import QueueManager
from abtest_sdk.tier2_reliability.dedup import EventDeduplicator

from abtest_sdk.tier3_platform.assignments import Assignment, AssignmentManager
from abtest_sdk.tier3_platform.experiments import (
    ExperimentManager,
    TenantSettings,
    TestDefinition,
    assign_group,
)
from abtest_sdk.tier3_platform.events import DataLayer, PageContext
from abtest_sdk.tier3_platform.api_client import EventsClient
from abtest_sdk.tier3_platform.reporter import EventReporter

from abtest_sdk.system import ABTestSystem, init_system, get_system

__version__ = "0.1.0"
__all__ = [
    # logging
    "get_logger",
    # errors
    "ABTestError", "ValidationError", "TransientDeliveryError",
    "StorageError", "ConfigurationError",
    # config
    "get_config", "ABTestConfig", "first_non_empty",
    # identity
    "TrackingIdentity", "TrackingIds", "MockIdentityProvider",
    # metrics
    "counter", "gauge", "histogram",
    # clock & scheduling
    "Clock", "VirtualClock", "Scheduler",
    # retry
    "RetryConfig", "with_retry",
    # validate / serialize
    "validate_input", "serialize", "deserialize",
    # storage
    "MemoryStore", "FileStore", "CookieJar",
    # delivery
    "QueueManager", "EventDeduplicator", "EventsClient", "EventReporter",
    # assignment
    "Assignment", "AssignmentManager", "ExperimentManager",
    "TenantSettings", "TestDefinition", "assign_group",
    # page
    "DataLayer", "PageContext",
    # composition root
    "ABTestSystem", "init_system", "get_system",
]
