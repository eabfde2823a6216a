"""
abtest_sdk.tier0_core.ids
──────────────────────────
ID generation for tracking identifiers. User and session ids are random
UUID v4 strings, the same shape the collector has always received.
"""
from __future__ import annotations

import uuid


def new_uuid4() -> str:
    """Generate a random UUID v4 string."""
    return str(uuid.uuid4())


__all__ = ["new_uuid4"]
