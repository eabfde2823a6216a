"""
abtest_sdk.tier0_core.errors
─────────────────────────────
Error taxonomy for assignment and delivery. Nothing in this package lets an
error reach the page visitor: validation failures are fatal to a single call,
delivery failures are retried and then left queued, storage failures are
logged and the caller carries on with in-memory state.

Optional capture: Sentry OSS
Select via:       ABTEST_ERROR_BACKEND=sentry|none
"""
from __future__ import annotations

import os
from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class ABTestError(Exception):
    """
    Base class for all SDK errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: short human-readable summary
    - detail: internal context for logs
    - retryable: whether the delivery pipeline may try again
    """

    code: str = "abtest_error"
    retryable: bool = False

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "An unexpected error occurred.",
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Typed error classes ───────────────────────────────────────────────────────

class ValidationError(ABTestError):
    """Missing or malformed fields on an assignment or event. Never retried."""
    code = "validation_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Validation failed.",
        fields: dict | None = None,
        **metadata: Any,
    ) -> None:
        self.fields = fields or {}
        super().__init__(code, user_message, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.fields:
            d["error"]["fields"] = self.fields
        return d


class TransientDeliveryError(ABTestError):
    """Network failure, timeout, or non-2xx response from the collector."""
    code = "transient_delivery_error"
    retryable = True

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Event delivery failed.",
        status_code: int | None = None,
        **metadata: Any,
    ) -> None:
        self.status_code = status_code
        super().__init__(code, user_message, **metadata)


class StorageError(ABTestError):
    """Durable storage could not be read or written."""
    code = "storage_error"


class ConfigurationError(ABTestError):
    """Misconfiguration detected while building the system."""
    code = "configuration_error"


# ── Error capture backend ─────────────────────────────────────────────────────

def _capture(error: ABTestError) -> None:
    """Send error to configured backend. Called automatically by ABTestError.__init__."""
    backend = os.getenv("ABTEST_ERROR_BACKEND", "none").lower()
    if backend == "sentry":
        _capture_sentry(error)


def _capture_sentry(error: ABTestError) -> None:
    import sentry_sdk

    if isinstance(error, (ConfigurationError, StorageError)):
        sentry_sdk.capture_exception(error)
    else:
        sentry_sdk.capture_message(
            str(error),
            level="warning",
            extras={"code": error.code, **error.metadata},
        )


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry — call once at application startup."""
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    os.environ["ABTEST_ERROR_BACKEND"] = "sentry"


__all__ = [
    "ABTestError", "ValidationError", "TransientDeliveryError",
    "StorageError", "ConfigurationError", "configure_sentry",
]
