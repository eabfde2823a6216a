"""
abtest_sdk.tier3_platform.events
──────────────────────────────────
Tracking event schema, the page context events are stamped with, and the
fire-and-forget page event bus assignments are announced on.

Wire format of one event (the collector receives a JSON array of these)::

    {
      "type": "system",
      "data": {
        "session_id": "...", "user_id": "...",
        "event_name": "test_assignment", "event_type": "system",
        "client_timestamp": "2025-01-01T00:00:00.000Z", "timezone_offset": 0,
        "event_data": {"test_id": "AB1", ..., "test_assignments": {...},
                       "path": "/products/x", "template": "product"}
      }
    }
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlparse

from pydantic import BaseModel, Field

from abtest_sdk.tier0_core.config import first_non_empty


# ── Schema ────────────────────────────────────────────────────────────────────

class EventData(BaseModel):
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    event_name: str = Field(min_length=1)
    event_type: str
    client_timestamp: str
    timezone_offset: int = 0
    event_data: dict[str, Any] = Field(default_factory=dict)


class Event(BaseModel):
    type: str = Field(min_length=1)
    data: EventData


def iso_timestamp(ts: float) -> str:
    """Millisecond-precision ISO-8601 UTC string (``...T12:00:00.123Z``)."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


# ── Page context ──────────────────────────────────────────────────────────────

def clean_path(path: str | None) -> str:
    """Strip one trailing slash; empty paths become ``/``."""
    if not path:
        return "/"
    if path.endswith("/"):
        path = path[:-1]
    return path or "/"


def normalize_path(value: str) -> str:
    """Path of a URL or relative path, with a leading slash and no trailing slashes."""
    parsed = urlparse(value)
    path = parsed.path if parsed.scheme else value
    if not path.startswith("/"):
        path = "/" + path
    return path.rstrip("/")


@dataclass
class PageContext:
    """What the SDK knows about the page it is running for."""
    url: str = "https://localhost/"
    platform_template: str | None = None  # storefront platform's template name
    body_template: str | None = None      # template declared in the page markup
    shop: str | None = None

    @property
    def hostname(self) -> str:
        return urlparse(self.url).hostname or "localhost"

    @property
    def path(self) -> str:
        return urlparse(self.url).path or "/"

    @property
    def is_https(self) -> bool:
        return urlparse(self.url).scheme == "https"

    @property
    def first_segment(self) -> str | None:
        parts = self.path.split("/")
        return parts[1] if len(parts) > 1 and parts[1] else None

    @property
    def template(self) -> str:
        return first_non_empty(
            self.platform_template,
            self.body_template,
            self.first_segment,
            default="unknown",
        )


# ── Event bus ─────────────────────────────────────────────────────────────────

@runtime_checkable
class EventBus(Protocol):
    def publish(self, message: dict[str, Any]) -> None: ...


@dataclass
class DataLayer:
    """In-memory analytics sink; mirrors a page-level data layer array."""
    messages: list[dict[str, Any]] = field(default_factory=list)

    def publish(self, message: dict[str, Any]) -> None:
        self.messages.append(message)


__all__ = [
    "EventData", "Event", "iso_timestamp",
    "clean_path", "normalize_path", "PageContext",
    "EventBus", "DataLayer",
]
