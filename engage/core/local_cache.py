"""
Local cache with per-kind TTL expiry.

Entries are valid while `now - storedAt < TTL(kind)`. Expired entries are
deleted lazily on read. Storage failures degrade to cache misses and are never
raised: the cache only accelerates features, it must not break them.
"""

import json
from typing import Any, Callable, Dict, Optional

from .config import CACHE_PATH, get_ttl_table
from .keys import KeyLike, render_key
from .storage import IStorage, JsonFileStorage, MemoryStorage, StorageError
from .types import CacheEntry, CacheKind, now_ms
from ..util.logging import logger

# Errors a storage backend or the JSON envelope can produce
_STORAGE_ERRORS = (StorageError, OSError, TypeError, ValueError, KeyError)


class LocalCache:
    """Key/value cache over a storage backend."""

    def __init__(self, storage: IStorage, ttl_table: Dict[CacheKind, int] = None,
                 clock: Callable[[], int] = now_ms, name: str = "local"):
        self.storage = storage
        self.ttl_table = dict(ttl_table) if ttl_table is not None else get_ttl_table()
        self.clock = clock
        self.name = name

    def ttl(self, kind) -> int:
        """TTL in milliseconds for a kind; unknown kinds never validate."""
        try:
            return self.ttl_table.get(CacheKind(kind), 0)
        except ValueError:
            return 0

    def get(self, key: KeyLike) -> Optional[Any]:
        """Return the cached value, or None if missing, unreadable or expired."""
        storage_key = render_key(key)
        try:
            raw = self.storage.get_item(storage_key)
        except _STORAGE_ERRORS as e:
            logger.log_cache_operation("get", storage_key, "degraded", {"error": str(e)})
            return None

        if raw is None:
            return None

        try:
            entry = CacheEntry.from_dict(json.loads(raw))
        except _STORAGE_ERRORS:
            # Invalid envelope, remove it
            self._remove_quietly(storage_key)
            return None

        if self.clock() - entry.stored_at < self.ttl(entry.kind):
            return entry.value

        # Cache expired, remove it
        self._remove_quietly(storage_key)
        logger.log_cache_operation("get", storage_key, "expired")
        return None

    def has(self, key: KeyLike) -> bool:
        return self.get(key) is not None

    def set(self, key: KeyLike, value: Any, kind=CacheKind.SYSTEM) -> bool:
        """Store a value under a TTL class. Returns False when storage refused it."""
        storage_key = render_key(key)
        try:
            entry = CacheEntry(value=value, kind=CacheKind(kind), stored_at=self.clock())
            self.storage.set_item(storage_key, json.dumps(entry.to_dict()))
        except _STORAGE_ERRORS as e:
            # Storage might be full or disabled, ignore
            logger.log_cache_operation("set", storage_key, "degraded", {"error": str(e)})
            return False
        logger.log_cache_operation("set", storage_key, "success", {"kind": CacheKind(kind).value})
        return True

    def clear(self, key: KeyLike) -> None:
        self._remove_quietly(render_key(key))

    def clear_all(self) -> None:
        try:
            self.storage.clear()
        except _STORAGE_ERRORS as e:
            logger.log_cache_operation("clear_all", "*", "degraded", {"error": str(e)})

    def clear_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix. Returns the count removed."""
        if not prefix:
            return 0
        try:
            matching = [k for k in self.storage.keys() if k.startswith(prefix)]
        except _STORAGE_ERRORS as e:
            logger.log_cache_operation("clear_prefix", prefix, "degraded", {"error": str(e)})
            return 0
        for storage_key in matching:
            self._remove_quietly(storage_key)
        return len(matching)

    def _remove_quietly(self, storage_key: str) -> None:
        try:
            self.storage.remove_item(storage_key)
        except _STORAGE_ERRORS as e:
            logger.log_cache_operation("remove", storage_key, "degraded", {"error": str(e)})


def persistent_cache(path=None, clock: Callable[[], int] = now_ms, ttl_table=None) -> LocalCache:
    """Cache that survives process restarts, for user-visible lists."""
    try:
        storage = JsonFileStorage(path or CACHE_PATH)
    except OSError as e:
        # Disabled persistent storage: fall back to a volatile cache
        logger.warning(f"Persistent cache unavailable at {path or CACHE_PATH}: {e}")
        storage = MemoryStorage()
    return LocalCache(storage, ttl_table=ttl_table, clock=clock, name="persistent")


def volatile_cache(clock: Callable[[], int] = now_ms, ttl_table=None) -> LocalCache:
    """Memory-only cache, for single-process transient flags."""
    return LocalCache(MemoryStorage(), ttl_table=ttl_table, clock=clock, name="volatile")
