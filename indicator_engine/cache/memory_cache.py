"""
Pulso — In-Memory TTL Cache
────────────────────────────
Process-local key/value cache with expiry and access statistics.

  - get() on an expired entry is a miss and evicts the entry
  - invalidate() drops one key or every key under a prefix
  - sweep() evicts everything already expired (run by the scheduler)
  - get_or_load() collapses concurrent misses for the same key into
    a single upstream load

Nothing here is persisted. Losing the cache only costs extra
upstream calls; the durable store and the upstreams are the truth.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

log = logging.getLogger("pulso.cache")

MAX_ENTRIES = 1000

_MISS = object()


@dataclass
class CacheEntry:
    key:        str
    value:      Any
    created_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class TTLCache:
    """
    TTL cache with hit/miss/eviction counters.

    The clock is injectable so tests can move time forward without
    sleeping. Bookkeeping is guarded by a lock; values themselves are
    treated as immutable snapshots and never copied.
    """

    def __init__(self, max_entries: int = MAX_ENTRIES,
                 clock: Callable[[], float] = time.monotonic):
        self.max_entries = max_entries
        self._clock      = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock       = threading.RLock()
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._hits       = 0
        self._misses     = 0
        self._evictions  = 0

    # ── Core operations ──────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return default
            if entry.expired(self._clock()):
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_one(now)
            self._entries[key] = CacheEntry(key, value, now, now + ttl)

    def invalidate(self, key: Optional[str] = None, prefix: Optional[str] = None) -> int:
        """Drop one exact key and/or every key starting with prefix. Returns count removed."""
        with self._lock:
            doomed = []
            if key is not None and key in self._entries:
                doomed.append(key)
            if prefix is not None:
                doomed.extend(k for k in self._entries if k.startswith(prefix) and k != key)
            for k in doomed:
                del self._entries[k]
        if doomed:
            log.debug(f"Invalidated {len(doomed)} entries (key={key} prefix={prefix})")
        return len(doomed)

    def sweep(self) -> int:
        """Evict every expired entry. Returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.expired(now)]
            for k in expired:
                del self._entries[k]
            self._evictions += len(expired)
        if expired:
            log.debug(f"Sweep evicted {len(expired)} expired entries")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            return {
                "hits":      self._hits,
                "misses":    self._misses,
                "size":      len(self._entries),
                "evictions": self._evictions,
            }

    def _evict_one(self, now: float):
        # Expired entries go first; otherwise the one closest to expiry
        victim = min(self._entries.values(),
                     key=lambda e: (not e.expired(now), e.expires_at))
        del self._entries[victim.key]
        self._evictions += 1

    # ── Request coalescing ───────────────────────────────────

    async def get_or_load(self, key: str, ttl: float,
                          loader: Callable[[], Awaitable[Any]],
                          ttl_for_result: Optional[Callable[[Any], float]] = None) -> Any:
        """
        Return the cached value, or run loader() once for every
        concurrent caller that misses on the same key.

        A failed load is not cached; every waiter sees the exception.
        ttl_for_result lets the caller pick a shorter TTL for results
        that should be retried sooner (e.g. unavailable upstreams).
        """
        value = self.get(key, _MISS)
        if value is not _MISS:
            return value

        task = self._in_flight.get(key)
        if task is None:
            async def _load():
                try:
                    result = await loader()
                    effective = ttl_for_result(result) if ttl_for_result else ttl
                    if effective > 0:
                        self.set(key, result, effective)
                    return result
                finally:
                    self._in_flight.pop(key, None)

            task = asyncio.create_task(_load())
            self._in_flight[key] = task
        else:
            log.debug(f"{key}: joining in-flight load")

        return await asyncio.shield(task)


# Process-wide cache shared by connectors and the aggregation engine
cache = TTLCache()
