"""
TTL + LRU cache for datastore values.

Purpose
-------
Reduce redundant remote reads and absorb bursts, trading bounded staleness
for latency and request budget.

Responsibilities
----------------
- Store values under composite `store:scope:key` keys with a per-entry TTL
- Treat expired entries as misses and purge them lazily
- Bound memory by entry count and by JSON-encoded byte size, evicting least
  recently used entries first regardless of TTL
- Support single-key, per-store and full invalidation
- Track hits, misses, expirations, evictions and invalidations

Non-Responsibilities
--------------------
- No remote I/O (the access layer decides when to populate or invalidate)
- No hit-rate alerting (handled by MetricsRecorder)

Architecture Notes
------------------
- collections.OrderedDict gives O(1) LRU bookkeeping (move_to_end/popitem)
- A threading.Lock guards every mutation; it is never held across I/O
- Values are deep-copied on the way in and out so callers cannot mutate
  cached state
- The clock is injectable for deterministic TTL tests
"""

from __future__ import annotations

import copy
import json
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

from datastore_manager.core.constants import CACHE_KEY_SEPARATOR
from datastore_manager.core.logging.logger import get_logger

logger = get_logger(__name__)


def _encoded_size(value: Any) -> int:
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def make_cache_key(store: str, scope: str, key: str) -> str:
    return CACHE_KEY_SEPARATOR.join((store, scope, key))


@dataclass
class CacheEntry:
    key: str
    value: Any
    inserted_at: float
    expires_at: float
    version: Optional[str] = None
    size_bytes: int = 0
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class CacheStats:
    entries: int
    size_bytes: int
    max_entries: int
    max_bytes: int
    hits: int
    misses: int
    expirations: int
    evictions: int
    invalidations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def memory_usage_ratio(self) -> float:
        return self.size_bytes / self.max_bytes if self.max_bytes else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": self.entries,
            "size_bytes": self.size_bytes,
            "max_entries": self.max_entries,
            "max_bytes": self.max_bytes,
            "hits": self.hits,
            "misses": self.misses,
            "expirations": self.expirations,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "hit_rate": round(self.hit_rate, 4),
        }


class TTLCache:
    """
    Size-bounded LRU cache with per-entry expiry.

    Example
    -------
    >>> cache = TTLCache(default_ttl=300, max_entries=1000)
    >>> cache.put(make_cache_key("PlayerData", "global", "p1"), {"level": 5})
    >>> value, found = cache.get(make_cache_key("PlayerData", "global", "p1"))
    """

    def __init__(
        self,
        default_ttl: float = 300.0,
        max_entries: int = 1_000,
        max_bytes: int = 100 * 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if max_entries < 1 or max_bytes < 1:
            raise ValueError("cache bounds must be positive")

        self.default_ttl = default_ttl
        self._max_entries = max_entries
        self._max_bytes = max_bytes
        self._clock = clock
        self._lock = Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._size_bytes = 0

        self._hits = 0
        self._misses = 0
        self._expirations = 0
        self._evictions = 0
        self._invalidations = 0

    # ════════════════════════════════════════════════════════════════════
    # Reads
    # ════════════════════════════════════════════════════════════════════

    def get(self, key: str) -> Tuple[Any, bool]:
        """Return (value, True) for a live entry, (None, False) otherwise."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None, False

            if entry.is_expired(self._clock()):
                self._remove(key)
                self._expirations += 1
                self._misses += 1
                return None, False

            self._entries.move_to_end(key)
            entry.hits += 1
            self._hits += 1
            return copy.deepcopy(entry.value), True

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Live entry without touching LRU order or statistics."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.is_expired(self._clock()):
                return None
            return entry

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.peek(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ════════════════════════════════════════════════════════════════════
    # Writes
    # ════════════════════════════════════════════════════════════════════

    def put(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        version: Optional[str] = None,
    ) -> bool:
        """
        Insert or overwrite `key`, resetting its TTL.

        Returns False when the value is not cached: it cannot be encoded or
        is larger than the whole byte budget.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")

        try:
            size = _encoded_size(value)
        except (TypeError, ValueError):
            logger.debug("Skipping cache put for unencodable value", extra={"cache_key": key})
            return False

        with self._lock:
            self._remove(key)
            if size > self._max_bytes:
                logger.debug(
                    "Value larger than cache byte budget; not cached",
                    extra={"cache_key": key, "size_bytes": size, "max_bytes": self._max_bytes},
                )
                return False

            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                value=copy.deepcopy(value),
                inserted_at=now,
                expires_at=now + ttl,
                version=version,
                size_bytes=size,
            )
            self._size_bytes += size
            self._evict_over_budget()
            return True

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._remove(key)
            if removed:
                self._invalidations += 1
            return removed

    def invalidate_prefix(self, store_name: str) -> int:
        """Drop every entry of `store_name`, across all scopes."""
        prefix = f"{store_name}{CACHE_KEY_SEPARATOR}"
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                self._remove(k)
            self._invalidations += len(doomed)

        if doomed:
            logger.debug(
                "Invalidated cache prefix",
                extra={"store": store_name, "entries_removed": len(doomed)},
            )
        return len(doomed)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._size_bytes = 0
            self._invalidations += count
            return count

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in doomed:
                self._remove(k)
            self._expirations += len(doomed)
            return len(doomed)

    # ════════════════════════════════════════════════════════════════════
    # Capacity
    # ════════════════════════════════════════════════════════════════════

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    def resize(self, max_entries: Optional[int] = None, max_bytes: Optional[int] = None) -> int:
        """Change bounds; returns the number of entries evicted to fit."""
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        if max_bytes is not None and max_bytes < 1:
            raise ValueError("max_bytes must be >= 1")

        with self._lock:
            before = self._evictions
            if max_entries is not None:
                self._max_entries = max_entries
            if max_bytes is not None:
                self._max_bytes = max_bytes
            self._evict_over_budget()
            return self._evictions - before

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                size_bytes=self._size_bytes,
                max_entries=self._max_entries,
                max_bytes=self._max_bytes,
                hits=self._hits,
                misses=self._misses,
                expirations=self._expirations,
                evictions=self._evictions,
                invalidations=self._invalidations,
            )

    # Callers hold self._lock.

    def _remove(self, key: str) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._size_bytes -= entry.size_bytes
        return True

    def _evict_over_budget(self) -> None:
        while self._entries and (
            len(self._entries) > self._max_entries or self._size_bytes > self._max_bytes
        ):
            _, entry = self._entries.popitem(last=False)
            self._size_bytes -= entry.size_bytes
            self._evictions += 1
