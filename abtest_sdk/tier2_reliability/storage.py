"""
abtest_sdk.tier2_reliability.storage
────────────────────────────────────────
Durable key/value storage abstraction, the server-side stand-in for a page's
local storage, plus a cookie jar for the cross-subdomain identity mirror.

Backends:
  - MemoryStore — process memory (tests, short-lived workers)
  - FileStore   — one JSON document on disk (local dev, CLI runs)

Select via: ABTEST_STORAGE_BACKEND=memory|file, ABTEST_STORAGE_PATH

Backend failures surface as StorageError from ``read_json``/``write_json``;
callers log them and carry on with in-memory state.
"""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from abtest_sdk.tier0_core.errors import ConfigurationError, StorageError
from abtest_sdk.tier1_runtime.clock import Clock, get_clock
from abtest_sdk.tier1_runtime.serialize import deserialize, serialize


@runtime_checkable
class KeyValueStore(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStore:
    """Dict-backed store."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileStore:
    """
    Filesystem-backed store. The whole map lives in one JSON document under
    ABTEST_STORAGE_PATH (default: ./.abtest_storage.json) and is rewritten on
    every mutation.
    """

    def __init__(self, path: str | None = None) -> None:
        self._path = Path(path or os.environ.get("ABTEST_STORAGE_PATH", "./.abtest_storage.json"))
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as exc:
            raise StorageError(
                "storage_corrupt", user_message=f"Could not load {str(self._path)!r}", path=str(self._path)
            ) from exc
        if not isinstance(data, dict):
            raise StorageError(
                "storage_corrupt", user_message=f"{str(self._path)!r} is not a JSON object", path=str(self._path)
            )
        return data

    def _dump(self, data: dict[str, str]) -> None:
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(data), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as exc:
            raise StorageError(
                "storage_write_failed", user_message=f"Could not write {str(self._path)!r}", path=str(self._path)
            ) from exc

    def get_item(self, key: str) -> str | None:
        return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._dump(data)

    def remove_item(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._dump(data)


# ── JSON helpers ──────────────────────────────────────────────────────────────

def read_json(store: KeyValueStore, key: str, default: Any = None) -> Any:
    """Read and parse *key*; raises StorageError on backend or parse failure."""
    try:
        raw = store.get_item(key)
        if raw is None or raw == "":
            return default
        return deserialize(raw)
    except (OSError, ValueError, TypeError) as exc:
        raise StorageError(
            "storage_read_failed", user_message=f"Could not read {key!r}", key=key
        ) from exc


def write_json(store: KeyValueStore, key: str, value: Any) -> None:
    """Serialize and write *value*; raises StorageError on failure."""
    try:
        store.set_item(key, serialize(value))
    except (OSError, ValueError, TypeError) as exc:
        raise StorageError(
            "storage_write_failed", user_message=f"Could not write {key!r}", key=key
        ) from exc


def remove_key(store: KeyValueStore, key: str) -> None:
    try:
        store.remove_item(key)
    except (OSError, ValueError) as exc:
        raise StorageError(
            "storage_remove_failed", user_message=f"Could not remove {key!r}", key=key
        ) from exc


# ── Cookies ───────────────────────────────────────────────────────────────────

@dataclass
class Cookie:
    name: str
    value: str
    expires_at: float
    domain: str
    secure: bool = False

    def header(self, max_age: int) -> str:
        secure = "; Secure" if self.secure else ""
        return (
            f"{self.name}={self.value}; path=/; max-age={max_age}; "
            f"SameSite=Lax; domain=.{self.domain}{secure}"
        )


def registrable_domain(hostname: str) -> str:
    """Last two labels of *hostname*, so cookies are shared across subdomains."""
    return ".".join(hostname.split(".")[-2:])


class CookieJar:
    """
    In-memory cookie jar scoped to a hostname. Expired cookies read as
    missing. ``headers()`` renders Set-Cookie values for a response.
    """

    def __init__(
        self,
        hostname: str = "localhost",
        secure: bool = False,
        clock: Clock | None = None,
    ) -> None:
        self._domain = registrable_domain(hostname)
        self._secure = secure
        self._clock = clock or get_clock()
        self._cookies: dict[str, Cookie] = {}
        self._max_age: dict[str, int] = {}

    @property
    def domain(self) -> str:
        return self._domain

    def set_cookie(self, name: str, value: str, days: float) -> Cookie:
        max_age = int(days * 24 * 60 * 60)
        cookie = Cookie(
            name=name,
            value=value,
            expires_at=self._clock.timestamp() + max_age,
            domain=self._domain,
            secure=self._secure,
        )
        self._cookies[name] = cookie
        self._max_age[name] = max_age
        return cookie

    def get_cookie(self, name: str) -> str | None:
        cookie = self._cookies.get(name)
        if cookie is None:
            return None
        if self._clock.timestamp() >= cookie.expires_at:
            del self._cookies[name]
            return None
        return cookie.value

    def headers(self) -> list[str]:
        return [c.header(self._max_age[n]) for n, c in self._cookies.items()]


# ── Provider factory ──────────────────────────────────────────────────────────

_provider: KeyValueStore | None = None


def get_provider() -> KeyValueStore:
    global _provider
    if _provider is not None:
        return _provider

    backend = os.environ.get("ABTEST_STORAGE_BACKEND", "memory").lower()
    if backend in ("memory", "mock"):
        _provider = MemoryStore()
    elif backend in ("file", "local"):
        _provider = FileStore()
    else:
        raise ConfigurationError(
            user_message=f"Unknown ABTEST_STORAGE_BACKEND: {backend!r}. Supported: memory, file"
        )
    return _provider


def _reset_provider() -> None:
    global _provider
    _provider = None


__all__ = [
    "KeyValueStore", "MemoryStore", "FileStore",
    "read_json", "write_json", "remove_key",
    "Cookie", "CookieJar", "registrable_domain",
    "get_provider",
]
