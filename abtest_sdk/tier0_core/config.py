"""
abtest_sdk.tier0_core.config
──────────────────────────────
Typed configuration with env layering. Reads from .env → environment
variables → keyword overrides. Every option the assignment engine and the
delivery pipeline recognise is enumerated here with its default.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ABTestConfig(BaseSettings):
    """
    Typed SDK configuration. Durations are in seconds.
    All env vars are prefixed with ABTEST_.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ───────────────────────────────────────────────────────────
    environment: str = Field(default="development", alias="ABTEST_ENV")

    # ── Collector ─────────────────────────────────────────────────────────────
    api_endpoint: str = Field(default="", alias="ABTEST_API_ENDPOINT")
    api_key: str = Field(default="", alias="ABTEST_API_KEY")
    shop_id: str = Field(default="", alias="ABTEST_SHOP_ID")

    # ── Rate limiting ─────────────────────────────────────────────────────────
    rate_limit_max_requests: int = Field(default=50, alias="ABTEST_RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window: float = Field(default=60.0, alias="ABTEST_RATE_LIMIT_WINDOW")

    # ── Retry ─────────────────────────────────────────────────────────────────
    retry_attempts: int = Field(default=3, alias="ABTEST_RETRY_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, alias="ABTEST_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, alias="ABTEST_RETRY_MAX_DELAY")
    retry_jitter: float = Field(default=1.0, alias="ABTEST_RETRY_JITTER")
    retry_timeout: float = Field(default=10.0, alias="ABTEST_RETRY_TIMEOUT")

    # ── Batching ──────────────────────────────────────────────────────────────
    batch_size: int = Field(default=10, alias="ABTEST_BATCH_SIZE")
    batch_interval: float = Field(default=0.1, alias="ABTEST_BATCH_INTERVAL")
    max_consecutive_failures: int = Field(default=3, alias="ABTEST_MAX_CONSECUTIVE_FAILURES")
    failure_cooldown: float = Field(default=60.0, alias="ABTEST_FAILURE_COOLDOWN")

    # ── Expiry windows ────────────────────────────────────────────────────────
    dedup_expiry: float = Field(default=30 * 60.0, alias="ABTEST_DEDUP_EXPIRY")
    cleanup_interval: float = Field(default=60 * 60.0, alias="ABTEST_CLEANUP_INTERVAL")
    assignment_ttl: float = Field(default=30 * 24 * 60 * 60.0, alias="ABTEST_ASSIGNMENT_TTL")
    session_timeout: float = Field(default=30 * 60.0, alias="ABTEST_SESSION_TIMEOUT")
    activity_interval: float = Field(default=60.0, alias="ABTEST_ACTIVITY_INTERVAL")

    # ── Storage ───────────────────────────────────────────────────────────────
    storage_backend: str = Field(default="memory", alias="ABTEST_STORAGE_BACKEND")
    storage_path: str = Field(default="./.abtest_storage.json", alias="ABTEST_STORAGE_PATH")

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="ABTEST_LOG_LEVEL")
    log_format: str = Field(default="json", alias="ABTEST_LOG_FORMAT")

    # ── Error reporting ───────────────────────────────────────────────────────
    error_backend: str = Field(default="none", alias="ABTEST_ERROR_BACKEND")

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if v.lower() not in allowed:
            raise ValueError(f"environment must be one of {allowed}, got {v!r}")
        return v.lower()

    @field_validator("api_endpoint")
    @classmethod
    def normalize_endpoint(cls, v: str) -> str:
        if v and not v.endswith("/events"):
            return v.rstrip("/") + "/events"
        return v

    @field_validator("batch_size", "retry_attempts", "max_consecutive_failures",
                     "rate_limit_max_requests")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be >= 1, got {v}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def get_config() -> ABTestConfig:
    """
    Return the singleton SDK config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return ABTestConfig()


def _reset_config() -> None:
    """For tests — clear the config cache."""
    get_config.cache_clear()


# ── Ordered resolution ────────────────────────────────────────────────────────

def first_non_empty(*sources: Any, default: Any = None) -> Any:
    """
    Return the first source that is not empty; first non-empty source wins.

    A source may be a value or a zero-argument callable evaluated lazily.
    ``None``, ``""``, the string ``"undefined"`` and empty containers count as
    empty. Returns *default* when every source is empty.

    Usage:
        template = first_non_empty(page.template, page.body_template, segment, default="unknown")
    """
    for source in sources:
        value = source() if callable(source) else source
        if value is None:
            continue
        if isinstance(value, str) and value in ("", "undefined"):
            continue
        if isinstance(value, (list, tuple, dict, set)) and not value:
            continue
        return value
    return default


__all__ = ["ABTestConfig", "get_config", "first_non_empty"]
