"""
Read-through cache used for mapping and ontology lookups.

The cache is never authoritative: every entry can be rebuilt from the
database, and mutations invalidate the affected keys. Values are stored as
JSON so a shared backend can be swapped in without changing callers.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Protocol

from flask import current_app

_MISSING = object()


class CacheBackend(Protocol):
    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def flush(self) -> bool: ...


class MemoryCache:
    """Process-local TTL cache."""

    def __init__(self, default_ttl: int = 300, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[float | None, str]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, raw = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
        return json.loads(raw)

    def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl == 0:
            return False
        raw = json.dumps(value, default=str)
        expires_at = self._clock() + ttl if ttl > 0 else None
        with self._lock:
            self._entries[key] = (expires_at, raw)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def flush(self) -> bool:
        with self._lock:
            self._entries.clear()
        return True


def get_cache() -> CacheBackend:
    """Return the importer cache bound to the current app, creating it lazily."""
    state = current_app.extensions.setdefault("importer", {})
    cache = state.get("cache")
    if cache is None:
        ttl = int(current_app.config.get("IMPORTER_CACHE_TTL_SECONDS", 300))
        cache = MemoryCache(default_ttl=ttl)
        state["cache"] = cache
    return cache


def cached(key: str, loader: Callable[[], Any], *, cache: CacheBackend | None = None, ttl: int | None = None) -> Any:
    """Return ``key`` from cache or compute it with ``loader`` and store it."""
    cache = cache or get_cache()
    value = cache.get(key)
    if value is not None:
        return value
    value = loader()
    if value is not None:
        cache.set(key, value, ttl)
    return value


def mapping_cache_key(data_source_id: int, shape_hash: str) -> str:
    return f"type_mappings:{data_source_id}:{shape_hash}"


def metatype_keys_cache_key(metatype_id: int) -> str:
    return f"metatypes:{metatype_id}:keys"


def relationship_keys_cache_key(relationship_pair_id: int) -> str:
    return f"metatype_relationship_pairs:{relationship_pair_id}:keys"
