"""Tiered TTL cache.

Two independent namespaces:

    memory   an insertion-ordered dict with a global entry cap; when full,
             the least-recently-inserted entry is evicted
    local    the durable-local store (SQLite), surviving restarts

A miss in the requested tier is a plain miss; tiers never fall back to one
another. Expiry is checked lazily on every read (an expired entry is
removed and reported absent) and actively by ``sweep``.
"""

from __future__ import annotations

import fnmatch
import logging
import time
from collections import OrderedDict
from typing import Any, Callable

from actionrail.core.models import CacheEntry, CacheTier
from actionrail.storage.base import LocalStore

logger = logging.getLogger("actionrail.cache")


class CacheManager:
    def __init__(
        self,
        *,
        max_entries: int = 1000,
        default_ttl_seconds: float = 300,
        store: LocalStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self._store = store
        self._clock = clock
        self._memory: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    @staticmethod
    def make_key(namespace: str, *parts: Any) -> str:
        return ":".join([namespace, *(str(p) for p in parts)])

    def _local(self) -> LocalStore | None:
        if self._store is None:
            logger.debug("Durable-local cache tier requested but no store is configured")
        return self._store

    # --- Single keys ---

    async def lookup(self, key: str, tier: CacheTier = CacheTier.MEMORY) -> CacheEntry | None:
        """The live entry for ``key``, or None. Distinguishes a cached ``None`` from a miss."""
        now = self._clock()
        if tier is CacheTier.MEMORY:
            entry = self._memory.get(key)
            if entry is not None and entry.is_expired(now):
                del self._memory[key]
                entry = None
            if entry is not None:
                entry.access_count += 1
                entry.last_accessed = now
        else:
            store = self._local()
            entry = await store.cache_get(key) if store else None
            if entry is not None and entry.is_expired(now):
                await store.cache_delete(key)  # type: ignore[union-attr]
                entry = None
            if entry is not None:
                await store.cache_touch(key, now)  # type: ignore[union-attr]
                entry.access_count += 1
                entry.last_accessed = now

        if entry is None:
            self._misses += 1
        else:
            self._hits += 1
        return entry

    async def get(self, key: str, tier: CacheTier = CacheTier.MEMORY, default: Any = None) -> Any:
        entry = await self.lookup(key, tier)
        return default if entry is None else entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl_seconds: float | None = None,
        tier: CacheTier = CacheTier.MEMORY,
    ) -> bool:
        entry = CacheEntry(
            value=value,
            created_at=self._clock(),
            ttl_seconds=self.default_ttl_seconds if ttl_seconds is None else ttl_seconds,
        )
        if tier is CacheTier.MEMORY:
            if key in self._memory:
                del self._memory[key]
            while len(self._memory) >= self.max_entries:
                evicted, _ = self._memory.popitem(last=False)
                self._evictions += 1
                logger.debug("Evicted cache entry %s (cap %d)", evicted, self.max_entries)
            self._memory[key] = entry
            return True

        store = self._local()
        if store is None:
            return False
        await store.cache_set(key, entry)
        return True

    async def delete(self, key: str, tier: CacheTier = CacheTier.MEMORY) -> bool:
        if tier is CacheTier.MEMORY:
            return self._memory.pop(key, None) is not None
        store = self._local()
        return await store.cache_delete(key) if store else False

    async def has(self, key: str, tier: CacheTier = CacheTier.MEMORY) -> bool:
        now = self._clock()
        if tier is CacheTier.MEMORY:
            entry = self._memory.get(key)
            if entry is not None and entry.is_expired(now):
                del self._memory[key]
                return False
            return entry is not None
        store = self._local()
        if store is None:
            return False
        entry = await store.cache_get(key)
        if entry is not None and entry.is_expired(now):
            await store.cache_delete(key)
            return False
        return entry is not None

    # --- Bulk ---

    async def get_many(self, keys: list[str], tier: CacheTier = CacheTier.MEMORY) -> dict[str, Any]:
        """Values for the keys that hit; misses are left out."""
        found: dict[str, Any] = {}
        for key in keys:
            entry = await self.lookup(key, tier)
            if entry is not None:
                found[key] = entry.value
        return found

    async def set_many(
        self,
        items: dict[str, Any],
        ttl_seconds: float | None = None,
        tier: CacheTier = CacheTier.MEMORY,
    ) -> int:
        stored = 0
        for key, value in items.items():
            if await self.set(key, value, ttl_seconds, tier):
                stored += 1
        return stored

    async def delete_many(self, keys: list[str], tier: CacheTier = CacheTier.MEMORY) -> int:
        deleted = 0
        for key in keys:
            if await self.delete(key, tier):
                deleted += 1
        return deleted

    async def keys(self, tier: CacheTier = CacheTier.MEMORY) -> list[str]:
        if tier is CacheTier.MEMORY:
            return list(self._memory)
        store = self._local()
        return await store.cache_keys() if store else []

    async def delete_pattern(self, pattern: str, tier: CacheTier = CacheTier.MEMORY) -> int:
        """Delete every key matching a glob pattern (``user:*:profile``)."""
        matching = [k for k in await self.keys(tier) if fnmatch.fnmatchcase(k, pattern)]
        return await self.delete_many(matching, tier)

    async def clear(self, tier: CacheTier | None = None) -> int:
        cleared = 0
        if tier in (None, CacheTier.MEMORY):
            cleared += len(self._memory)
            self._memory.clear()
        if tier in (None, CacheTier.LOCAL) and self._store is not None:
            cleared += await self._store.cache_clear()
        return cleared

    async def sweep(self) -> int:
        """Remove expired entries from every tier. Returns how many were dropped."""
        now = self._clock()
        expired = [k for k, e in self._memory.items() if e.is_expired(now)]
        for key in expired:
            del self._memory[key]
        removed = len(expired)
        if self._store is not None:
            removed += await self._store.cache_purge_expired(now)
        if removed:
            logger.debug("Swept %d expired cache entries", removed)
        return removed

    def stats(self) -> dict[str, Any]:
        total = self._hits + self._misses
        return {
            "memory_entries": len(self._memory),
            "max_entries": self.max_entries,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
            "evictions": self._evictions,
            "local_tier": self._store is not None,
        }
