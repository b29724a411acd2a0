"""
In-memory result cache for statistics queries.

Provides:
- TTL-based expiration with lazy eviction on read
- Substring-based invalidation of result families ("stats", "chart", ...)
- Deterministic, order-independent key building
- Statistics tracking
- Thread-safe access (event loop and executor threads share one instance)

Usage:
    from core.cache import ResultCache

    cache = ResultCache(default_ttl=300)
    cache.set("stats:abc", rows)
    rows = cache.get("stats:abc")

    # Drop every stats result, keep charts
    cache.invalidate("stats")
"""
import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.observability import get_logger

logger = get_logger(__name__)

DEFAULT_TTL = 300  # 5 minutes


def build_cache_key(query_type: str, params: Dict[str, Any]) -> str:
    """
    Build a cache key from a query type and its parameters.

    Parameters are encoded as canonical JSON (sorted keys), so the key does
    not depend on insertion order. ``None`` values are dropped: an absent
    parameter is distinct from every present value. The digest is hex, so a
    family prefix can never collide with a substring of the hash.
    """
    present = {k: v for k, v in params.items() if v is not None}
    canonical = json.dumps(present, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.md5(canonical.encode()).hexdigest()
    return f"{query_type}:{digest}"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    """Cache statistics for monitoring."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "invalidations": self.invalidations,
            "evictions": self.evictions,
            "hit_rate_percent": round(self.hit_rate, 2),
        }

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.sets = 0
        self.invalidations = 0
        self.evictions = 0


class ResultCache:
    """
    Bounded-lifetime key/value store.

    An entry is never returned at or after its expiry time; such a read is
    a miss and removes the entry. All operations hold one lock, so a bulk
    invalidation cannot interleave with an insertion.
    """

    def __init__(self, default_ttl: int = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = CacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value from the cache.

        Returns:
            Cached value, or None on miss/expiry
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._stats.misses += 1
                self._stats.evictions += 1
                logger.debug(f"Cache entry expired: {key}")
                return None

            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: Value to cache (stored by reference)
            ttl: Time-to-live in seconds (default: ``default_ttl``)
        """
        if ttl is None:
            ttl = self.default_ttl
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
            self._stats.sets += 1

    def invalidate(self, pattern: Optional[str] = None) -> int:
        """
        Remove entries whose key contains ``pattern``; everything if None.

        Returns:
            Number of entries removed
        """
        with self._lock:
            if pattern is None:
                removed = len(self._entries)
                self._entries.clear()
            else:
                keys = [k for k in self._entries if pattern in k]
                for k in keys:
                    del self._entries[k]
                removed = len(keys)
            self._stats.invalidations += removed

        if removed:
            logger.debug(f"Invalidated {removed} cache entries matching {pattern!r}")
        return removed

    def clear(self) -> None:
        """Drop every entry and reset statistics."""
        with self._lock:
            self._entries.clear()
            self._stats.reset()

    def cleanup_expired(self) -> int:
        """Evict every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
            self._stats.evictions += len(expired)
        return len(expired)

    def get_stats(self) -> dict:
        """Get cache statistics, including live/expired entry counts."""
        with self._lock:
            now = self._clock()
            expired = sum(1 for e in self._entries.values() if e.is_expired(now))
            return {
                "entries": len(self._entries),
                "active": len(self._entries) - expired,
                "expired": expired,
                "default_ttl": self.default_ttl,
                **self._stats.to_dict(),
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._stats.reset()
