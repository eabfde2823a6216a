"""
abtest_sdk.tier3_platform.experiments
───────────────────────────────────────
Experiment bucketing. Tests sharing a page-group are mutually exclusive: a
visitor draws once per group against the group's traffic percentage and at
most one randomized test in the group receives a non-control variant.

Test definitions come from tenant configuration in one of two shapes:

  structured   {"tests": [{"id": "AB1", "mode": "test", "location": "product",
                           "variants_count": 2, ...}], "traffic": {"product": 50}}
  theme        {"AB1": "test", "AB1_location": "product", "AB1_variants_count": "2",
                "hw-product-traffic": "50"}

Modes: ``"test"`` is randomized; ``"forced:<v>"`` and ``"v<v>"`` pin variant
``<v>`` (``"0"`` pins control).
"""
from __future__ import annotations

import random
import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from abtest_sdk.tier0_core.config import first_non_empty
from abtest_sdk.tier0_core.errors import ABTestError
from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier3_platform.assignments import (
    CONTROL_VARIANT,
    Assignment,
    AssignmentManager,
    AssignmentMode,
    AssignmentType,
)
from abtest_sdk.tier3_platform.events import EventBus, PageContext, normalize_path

logger = get_logger(__name__)

PAGE_SPECIFIC_KEY = "page_specific"
STANDARD_GROUPS = ("global", "product", "collection", "cart", "checkout", "home")
TEMPLATE_TO_GROUP = {
    "product": "product",
    "collection": "collection",
    "cart": "cart",
    "checkout": "checkout",
    "index": "home",
}

_THEME_TEST_KEY = re.compile(r"^AB\d+$")


# ── Tenant configuration ──────────────────────────────────────────────────────

class TestDefinition(BaseModel):
    __test__ = False  # not a pytest class

    id: str = Field(min_length=1)
    mode: str = "test"
    location: str = Field(default="global", validation_alias=AliasChoices("location", "page_group"))
    page_specific_url: str | None = None
    device: str = "both"
    name: str = ""
    variants_count: int = Field(default=1, ge=1, validation_alias=AliasChoices("variants_count", "variantsCount"))

    @field_validator("mode", mode="before")
    @classmethod
    def coerce_mode(cls, v: Any) -> str:
        return str(v) if v not in (None, "") else "test"

    @property
    def forced_variant(self) -> str | None:
        if self.mode.startswith("forced:"):
            return self.mode[len("forced:"):] or CONTROL_VARIANT
        if self.mode.startswith("v"):
            return self.mode[1:] or CONTROL_VARIANT
        return None

    @property
    def is_forced(self) -> bool:
        return self.forced_variant is not None

    @property
    def is_page_specific(self) -> bool:
        return self.location == PAGE_SPECIFIC_KEY and bool(self.page_specific_url)

    @property
    def page_group(self) -> str:
        """Group the test is bucketed in: its location, or its URL when page-specific."""
        return self.page_specific_url if self.is_page_specific else self.location

    @property
    def variants(self) -> list[str]:
        return [str(i) for i in range(1, self.variants_count + 1)]


class TenantSettings(BaseModel):
    enabled: bool = True
    tests: list[TestDefinition] = Field(default_factory=list)
    traffic: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_theme_settings(cls, settings: Mapping[str, Any]) -> "TenantSettings":
        """Build from the flat ``AB<n>`` / ``hw-<group>-traffic`` form."""
        tests = []
        for key in sorted(k for k in settings if _THEME_TEST_KEY.match(k)):
            count = _parse_int(settings.get(f"{key}_variants_count"), default=1) or 1
            tests.append(TestDefinition(
                id=key,
                mode=settings[key],
                location=settings.get(f"{key}_location") or "global",
                page_specific_url=settings.get(f"{key}_page_specific_url"),
                device=settings.get(f"{key}_device") or "both",
                name=settings.get(f"{key}_name") or "",
                variants_count=count,
            ))
        traffic = {k: v for k, v in settings.items() if k.startswith("hw-") and k.endswith("-traffic")}
        if isinstance(settings.get("traffic"), Mapping):
            traffic.update(settings["traffic"])
        enabled = settings.get("enabled", True)
        return cls(enabled=enabled, tests=tests, traffic=traffic)


def _parse_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def resolve_traffic(group: str, tests: Sequence[TestDefinition], traffic: Mapping[str, Any]) -> int:
    """Traffic percentage (0-100) for one page-group."""
    if tests and tests[0].is_page_specific:
        raw = traffic.get(PAGE_SPECIFIC_KEY)
    elif group in STANDARD_GROUPS:
        raw = first_non_empty(traffic.get(group), traffic.get(f"hw-{group}-traffic"))
    else:
        raw = None
    return max(0, min(100, _parse_int(raw, default=0)))


# ── Bucketing ─────────────────────────────────────────────────────────────────

def _assignment_data(test: TestDefinition, group: str, variant: str, type_: AssignmentType,
                     mode: AssignmentMode) -> dict[str, Any]:
    return {
        "assigned_variant": variant,
        "type": type_.value,
        "mode": mode.value,
        "page_group": group,
        "name": test.name,
    }


def assign_group(
    group: str,
    tests: Sequence[TestDefinition],
    traffic_percent: int,
    rng: random.Random,
    existing: Mapping[str, Assignment] | None = None,
) -> dict[str, dict[str, Any]]:
    """
    Bucket the tests of one page-group. Returns assignment data keyed by test
    id, only for tests without a valid *existing* assignment.
    """
    existing = existing or {}
    result: dict[str, dict[str, Any]] = {}

    forced = [t for t in tests if t.is_forced]
    unforced = [t for t in tests if not t.is_forced]

    for test in forced:
        if test.id in existing:
            continue
        variant = test.forced_variant
        if variant == CONTROL_VARIANT:
            result[test.id] = _assignment_data(test, group, variant, AssignmentType.CONTROL,
                                               AssignmentMode.FORCED_CONTROL)
        else:
            result[test.id] = _assignment_data(test, group, variant, AssignmentType.TEST,
                                               AssignmentMode.FORCED)

    pending = [t for t in unforced if t.id not in existing]
    if not pending:
        return result

    already_tested = any(
        existing[t.id].assigned_variant != CONTROL_VARIANT for t in unforced if t.id in existing
    )
    if already_tested:
        for test in pending:
            result[test.id] = _assignment_data(test, group, CONTROL_VARIANT, AssignmentType.CONTROL,
                                               AssignmentMode.EXCLUDED)
        return result

    fraction = traffic_percent / 100
    draw = rng.random()
    logger.debug("bucketing.draw", page_group=group, draw=draw, fraction=fraction)

    if draw >= fraction:
        for test in pending:
            result[test.id] = _assignment_data(test, group, CONTROL_VARIANT, AssignmentType.CONTROL,
                                               AssignmentMode.PURE_CONTROL)
        return result

    chosen = pending[rng.randrange(len(pending))]
    for test in pending:
        if test is chosen:
            variant = rng.choice(test.variants)
            result[test.id] = _assignment_data(test, group, variant, AssignmentType.TEST,
                                               AssignmentMode.PROBABILISTIC)
        else:
            result[test.id] = _assignment_data(test, group, CONTROL_VARIANT, AssignmentType.CONTROL,
                                               AssignmentMode.EXCLUDED)
    return result


def group_tests(tests: Iterable[TestDefinition]) -> dict[str, list[TestDefinition]]:
    groups: dict[str, list[TestDefinition]] = {}
    for test in tests:
        groups.setdefault(test.page_group, []).append(test)
    return groups


# ── Manager ───────────────────────────────────────────────────────────────────

class ExperimentManager:
    """
    Buckets every configured page-group, stores the results and reports each
    new assignment.

    Usage::

        manager = ExperimentManager(assignments, settings, reporter, event_bus=data_layer)
        await manager.initialize()
    """

    def __init__(
        self,
        assignments: AssignmentManager,
        settings: TenantSettings,
        reporter: Any = None,
        *,
        event_bus: EventBus | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._assignments = assignments
        self._settings = settings
        self._reporter = reporter
        self._event_bus = event_bus
        self._rng = rng or random.Random()

    def assign_all_groups(self) -> list[Assignment]:
        """Bucket every page-group; return the assignments created by this call."""
        created: list[Assignment] = []
        for group, tests in group_tests(self._settings.tests).items():
            existing: dict[str, Assignment] = {}
            for test in tests:
                assignment = self._assignments.get_assignment(test.id)
                if assignment is not None:
                    existing[test.id] = assignment
            traffic = resolve_traffic(group, tests, self._settings.traffic)
            new_data = assign_group(group, tests, traffic, self._rng, existing)
            for test_id, data in new_data.items():
                created.append(self._assignments.set_assignment(test_id, data))
            logger.info("bucketing.group_done", page_group=group, traffic=traffic,
                        created=len(new_data), kept=len(existing))
        return created

    async def initialize(self) -> bool:
        if not self._settings.enabled:
            logger.info("experiments.disabled")
            return False
        try:
            self._assignments.cleanup()
            created = self.assign_all_groups()
            if self._reporter is not None:
                for assignment in created:
                    await self._reporter.report_assignment(assignment)
            self.publish_assignments()
        except ABTestError as exc:
            logger.error("experiments.initialize_failed", code=exc.code, error=str(exc))
            return False
        except Exception as exc:
            logger.exception("experiments.initialize_failed", error=str(exc))
            return False
        logger.info("experiments.initialized", assignments=len(self._assignments.get_all_assignments()))
        return True

    def publish_assignments(self) -> None:
        if self._event_bus is None:
            return
        for assignment in self._assignments.get_all_assignments():
            self._event_bus.publish({
                "ab_test": {
                    "test_id": assignment.test_id,
                    "variant": assignment.assigned_variant,
                    "mode": assignment.mode,
                }
            })

    def assignments_for_page(self, page: PageContext) -> list[Assignment]:
        """Valid assignments that apply to *page*."""
        mapped = TEMPLATE_TO_GROUP.get(page.template, "home")
        applicable = {"global", mapped}
        current_path = normalize_path(page.url)
        return [
            a for a in self._assignments.get_all_assignments()
            if a.page_group in applicable or normalize_path(a.page_group) == current_path
        ]


__all__ = [
    "PAGE_SPECIFIC_KEY", "STANDARD_GROUPS", "TEMPLATE_TO_GROUP",
    "TestDefinition", "TenantSettings", "resolve_traffic",
    "assign_group", "group_tests", "ExperimentManager",
]
