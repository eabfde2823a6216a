"""
abtest_sdk.tier3_platform.assignments
───────────────────────────────────────
Canonical store of variant assignments, one per test id.

Two variants are tracked per assignment:
  - assigned_variant — what bucketing produced (including forced values)
  - tested_variant   — what may be attributed as the page-group's clean
                       experiment read: the variant itself when it is the only
                       non-control assignment in its group, "0" when the whole
                       group is control, "excluded" otherwise

An assignment is valid while every required field is present and it is
younger than the TTL (30 days). Invalid assignments are never returned;
``cleanup()`` deletes them.

After every mutation the valid set is written to durable storage as two maps
keyed by test id: the full storage record and the reduced "active tests"
pixel record.
"""
from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from abtest_sdk.tier0_core.config import first_non_empty
from abtest_sdk.tier0_core.errors import StorageError
from abtest_sdk.tier0_core.logging import get_logger
from abtest_sdk.tier1_runtime.clock import Clock, get_clock
from abtest_sdk.tier1_runtime.validate import require_fields
from abtest_sdk.tier2_reliability.storage import KeyValueStore, read_json, write_json

logger = get_logger(__name__)

CONTROL_VARIANT = "0"
EXCLUDED = "excluded"
DEFAULT_TTL = 30 * 24 * 60 * 60.0

ASSIGNMENTS_KEY = "hw-abt-assignments"
ACTIVE_TESTS_KEY = "pg_active_tests"


class AssignmentType(str, Enum):
    CONTROL = "control"
    TEST = "test"


class AssignmentMode(str, Enum):
    PROBABILISTIC = "probabilistic"
    PURE_CONTROL = "pure-control"
    EXCLUDED = "excluded"
    FORCED = "forced"
    FORCED_CONTROL = "forced-0"


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass
class Assignment:
    test_id: str
    type: str
    mode: str
    page_group: str
    assigned_variant: str
    created_at: int                     # epoch milliseconds
    tested_variant: str | None = None
    name: str = ""

    _REQUIRED = ("test_id", "type", "mode", "page_group", "assigned_variant", "created_at")

    def is_valid(self, now_ms: int, ttl: float = DEFAULT_TTL) -> bool:
        has_all = all(getattr(self, f) not in (None, "") for f in self._REQUIRED)
        return has_all and (now_ms - self.created_at) < ttl * 1000

    def to_storage_format(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "assigned_variant": self.assigned_variant,
            "tested_variant": self.tested_variant,
            "type": self.type,
            "mode": self.mode,
            "page_group": self.page_group,
            "created_at": self.created_at,
            "name": self.name,
        }

    def to_pixel_format(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "type": self.type,
            "mode": self.mode,
            "group": self.page_group,
            "name": self.name,
            "tested_variant": self.tested_variant,
            "assigned_variant": self.assigned_variant,
        }

    @classmethod
    def from_storage(cls, data: Mapping[str, Any] | None) -> "Assignment | None":
        """
        Rebuild a stored record. Records written by older clients used
        camelCase keys, ``variant`` and ``timestamp``; those are read too.
        Returns None when the record cannot be used.
        """
        if not isinstance(data, Mapping):
            return None
        test_id = first_non_empty(data.get("test_id"), data.get("testId"))
        if not test_id:
            return None
        created_at = first_non_empty(data.get("created_at"), data.get("timestamp"))
        try:
            created_at = int(created_at) if created_at is not None else None
        except (TypeError, ValueError):
            return None
        return cls(
            test_id=str(test_id),
            type=data.get("type"),
            mode=data.get("mode"),
            page_group=first_non_empty(data.get("page_group"), data.get("pageGroup")),
            assigned_variant=first_non_empty(data.get("assigned_variant"), data.get("variant")),
            created_at=created_at,
            tested_variant=data.get("tested_variant"),
            name=data.get("name") or "",
        )


# ── Attribution ───────────────────────────────────────────────────────────────

def attribute_tested_variants(assigned_variants: Sequence[str]) -> list[str]:
    """
    Tested variants for one page-group, in the same order as its assigned
    variants: no non-control → all "0"; exactly one → that one keeps its
    variant, the rest are "excluded"; two or more → all "excluded".
    """
    non_control = [v for v in assigned_variants if v != CONTROL_VARIANT]
    if not non_control:
        return [CONTROL_VARIANT] * len(assigned_variants)
    if len(non_control) == 1:
        return [v if v != CONTROL_VARIANT else EXCLUDED for v in assigned_variants]
    return [EXCLUDED] * len(assigned_variants)


def recalculate_tested_variants(assignments: Iterable[Assignment]) -> None:
    """Set ``tested_variant`` on every assignment, grouped by page-group."""
    groups: dict[str, list[Assignment]] = defaultdict(list)
    for assignment in assignments:
        groups[assignment.page_group or "default"].append(assignment)

    for group, members in groups.items():
        tested = attribute_tested_variants([a.assigned_variant for a in members])
        for assignment, value in zip(members, tested):
            assignment.tested_variant = value
        logger.debug("attribution.recalculated", page_group=group, tested=tested)


# ── Manager ───────────────────────────────────────────────────────────────────

class AssignmentManager:
    """
    Usage::

        manager = AssignmentManager(store, clock=clock)
        manager.set_assignment("AB1", {"type": "test", "mode": "probabilistic",
                                       "page_group": "global", "assigned_variant": "2"})
        manager.get_assignment("AB1").tested_variant   # "2"
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Clock | None = None,
        ttl: float = DEFAULT_TTL,
        assignments_key: str = ASSIGNMENTS_KEY,
        active_tests_key: str = ACTIVE_TESTS_KEY,
    ) -> None:
        self._store = store
        self._clock = clock or get_clock()
        self._ttl = ttl
        self._assignments_key = assignments_key
        self._active_tests_key = active_tests_key
        self._assignments: dict[str, Assignment] = {}
        self._load_from_storage()
        self.persist()

    def _now_ms(self) -> int:
        return self._clock.timestamp_ms()

    def _is_valid(self, assignment: Assignment | None) -> bool:
        return assignment is not None and assignment.is_valid(self._now_ms(), self._ttl)

    def _valid(self) -> list[Assignment]:
        return [a for a in self._assignments.values() if self._is_valid(a)]

    def _load_from_storage(self) -> None:
        try:
            stored = read_json(self._store, self._assignments_key, default={})
        except StorageError as exc:
            logger.error("assignments.load_failed", error=str(exc))
            return
        if not isinstance(stored, dict):
            logger.warning("assignments.load_skipped", reason="not a map")
            return
        for test_id, record in stored.items():
            assignment = Assignment.from_storage(record)
            if self._is_valid(assignment):
                self._assignments[test_id] = assignment
            else:
                logger.info("assignments.skipped_invalid", test_id=test_id)
        logger.info("assignments.loaded", count=len(self._assignments))

    # ── Public API ───────────────────────────────────────────────────────────

    def set_assignment(self, test_id: str, data: Mapping[str, Any]) -> Assignment:
        """Create (or overwrite) the assignment for *test_id* and persist."""
        if not test_id:
            require_fields({}, ["test_id"], "Assignment")
        require_fields(data, ["type", "mode", "page_group"], "Assignment")
        assigned = first_non_empty(data.get("assigned_variant"), data.get("variant"))
        if assigned is None:
            require_fields({}, ["assigned_variant"], "Assignment")

        assignment = Assignment(
            test_id=test_id,
            type=str(data["type"]),
            mode=str(data["mode"]),
            page_group=str(data["page_group"]),
            assigned_variant=str(assigned),
            created_at=self._now_ms(),
            name=data.get("name") or "",
        )
        self._assignments[test_id] = assignment
        self.persist()
        logger.info(
            "assignment.stored",
            test_id=test_id,
            page_group=assignment.page_group,
            assigned_variant=assignment.assigned_variant,
            tested_variant=assignment.tested_variant,
            mode=assignment.mode,
        )
        return assignment

    def get_assignment(self, test_id: str) -> Assignment | None:
        assignment = self._assignments.get(test_id)
        return assignment if self._is_valid(assignment) else None

    def get_all_assignments(self) -> list[Assignment]:
        return self._valid()

    def cleanup(self) -> int:
        """Delete invalid assignments; re-persist if any were removed."""
        expired = [tid for tid, a in self._assignments.items() if not self._is_valid(a)]
        for test_id in expired:
            del self._assignments[test_id]
            logger.info("assignment.expired", test_id=test_id)
        if expired:
            self.persist()
        return len(expired)

    def persist(self) -> None:
        """Recalculate attribution and write both projections of the valid set."""
        valid = self._valid()
        recalculate_tested_variants(valid)
        storage_data = {a.test_id: a.to_storage_format() for a in valid}
        pixel_data = {a.test_id: a.to_pixel_format() for a in valid}
        try:
            write_json(self._store, self._assignments_key, storage_data)
            write_json(self._store, self._active_tests_key, pixel_data)
        except StorageError as exc:
            logger.error("assignments.persist_failed", error=str(exc))

    def __len__(self) -> int:
        return len(self._assignments)


__all__ = [
    "CONTROL_VARIANT", "EXCLUDED", "AssignmentType", "AssignmentMode",
    "Assignment", "attribute_tested_variants", "recalculate_tested_variants",
    "AssignmentManager",
]
