"""
abtest_sdk.tier0_core.logging
──────────────────────────────
Structured logs for the bucketing and delivery pipeline. Every record
carries the SDK version plus whatever identity context was bound at
startup (user_id, session_id). Collector credentials are
scrubbed, including inside nested header/payload dicts.

Minimal stack: structlog (stdout JSON or console)
Configure via: ABTEST_LOG_LEVEL, ABTEST_LOG_FORMAT=json|console
"""
from __future__ import annotations

import logging
import os
import sys
from typing import Any

import structlog

__all__ = ["get_logger", "bind_context", "clear_context"]

_SDK_VERSION = "0.1.0"


# ── Configuration ─────────────────────────────────────────────────────────────

def _configure_structlog() -> None:
    log_level = os.getenv("ABTEST_LOG_LEVEL", "INFO").upper()
    log_format = os.getenv("ABTEST_LOG_FORMAT", "json").lower()
    level = getattr(logging, log_level, logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _sdk_version_processor,
        _redact_processor,
    ]

    renderer: Any
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    sdk_logger = logging.getLogger("abtest_sdk")
    if not any(getattr(h, "_abtest_handler", False) for h in sdk_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        handler._abtest_handler = True  # type: ignore[attr-defined]
        sdk_logger.addHandler(handler)
    sdk_logger.setLevel(level)


# ── Processors ────────────────────────────────────────────────────────────────

_REDACT_KEYS = frozenset({
    "api_key", "apikey", "x-api-key", "authorization", "token",
    "secret", "password", "dsn",
})

_REDACTED = "[REDACTED]"


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: _REDACTED if str(k).lower() in _REDACT_KEYS else _scrub(v)
            for k, v in value.items()
        }
    return value


def _redact_processor(
    logger: Any, method: str, event_dict: dict
) -> dict:
    """Strip credentials from log records, including nested dicts."""
    for key in list(event_dict.keys()):
        if key.lower() in _REDACT_KEYS:
            event_dict[key] = _REDACTED
        elif isinstance(event_dict[key], dict):
            event_dict[key] = _scrub(event_dict[key])
    return event_dict


def _sdk_version_processor(
    logger: Any, method: str, event_dict: dict
) -> dict:
    event_dict.setdefault("sdk_version", _SDK_VERSION)
    return event_dict


# ── Public API ────────────────────────────────────────────────────────────────

_configured = False


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Return a structured logger bound to the given name.

    Usage:
        log = get_logger(__name__)
        log.info("assignment.stored", test_id="AB1", variant="2")
        log.warning("delivery.batch_failed", size=10, failures=2)
    """
    global _configured
    if not _configured:
        _configure_structlog()
        _configured = True
    return structlog.get_logger(name or __name__)


def bind_context(**kwargs: Any) -> None:
    """
    Bind identity fields to the current async context so every
    assignment and delivery log line can be joined to a visitor.

    Usage:
        bind_context(user_id=ids.user_id, session_id=ids.session_id)
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
