"""
abtest_sdk.tier1_runtime.serialize
───────────────────────────────────────
JSON serialization for everything that crosses the durable-storage boundary
(assignment maps, the pending-event snapshot). Storage values are text, the
way browser storage holds them.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel


def _plain(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, dict):
        return {k: _plain(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_plain(v) for v in obj]
    return obj


def serialize(obj: BaseModel | dict | list) -> str:
    """
    Serialize a Pydantic model, or a dict/list that may contain models, to JSON text.

    Usage:
        store.set_item("pg_event_queue", serialize(queue))
    """
    return json.dumps(_plain(obj), default=str, separators=(",", ":"))


def deserialize(data: str | bytes) -> Any:
    """Parse JSON text produced by :func:`serialize`."""
    if isinstance(data, bytes):
        data = data.decode()
    return json.loads(data)


__all__ = ["serialize", "deserialize"]
