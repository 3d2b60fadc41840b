"""
In-memory cache for registry packuments.

One install run asks the registry about the same package many times (once
per requested range, once more on update). Packuments are kept per
registry, expire after a TTL and are evicted least recently used first.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .cli_config import get_config

CacheKey = Tuple[str, str]


@dataclass
class CachedPackument:
    packument: Any
    stored_at: float
    ttl_seconds: int

    def expired(self, now: Optional[float] = None) -> bool:
        return ((now or time.time()) - self.stored_at) > self.ttl_seconds


@dataclass
class PackumentCacheStats:
    """Lookup counters of a packument cache."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expired: int = 0

    @property
    def lookups(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate_percent(self) -> float:
        return self.hits / self.lookups * 100.0 if self.lookups else 0.0


@dataclass
class PackumentCache:
    """Thread-safe packument cache keyed by registry URL and package name."""

    max_size: int
    ttl_seconds: int
    enabled: bool = True
    stats: PackumentCacheStats = field(default_factory=PackumentCacheStats)
    _entries: "OrderedDict[CacheKey, CachedPackument]" = field(
        default_factory=OrderedDict, init=False, repr=False
    )
    _lock: Any = field(default_factory=threading.RLock, init=False, repr=False)

    @classmethod
    def from_config(cls) -> "PackumentCache":
        performance = get_config().performance
        return cls(
            max_size=performance.max_cache_size,
            ttl_seconds=performance.cache_ttl_seconds,
            enabled=performance.enable_caching,
        )

    def get(self, package_name: str, registry_url: str) -> Optional[Any]:
        """The cached packument, or None if absent or expired."""
        if not self.enabled:
            return None

        key = (registry_url, package_name)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.expired():
                del self._entries[key]
                self.stats.expired += 1
                entry = None

            if entry is None:
                self.stats.misses += 1
                return None

            self._entries.move_to_end(key)
            self.stats.hits += 1
            return entry.packument

    def put(self, package_name: str, registry_url: str, packument: Any) -> None:
        if not self.enabled:
            return

        key = (registry_url, package_name)
        with self._lock:
            self._entries.pop(key, None)
            while self._entries and len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
                self.stats.evictions += 1
            self._entries[key] = CachedPackument(packument, time.time(), self.ttl_seconds)

    def purge_expired(self) -> int:
        """Drop expired packuments, returning how many were dropped."""
        now = time.time()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expired(now)]
            for key in expired:
                del self._entries[key]
            self.stats.expired += len(expired)
            return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def describe(self) -> Dict[str, Any]:
        """Settings and counters, for display."""
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "enabled": self.enabled,
                "hits": self.stats.hits,
                "misses": self.stats.misses,
                "hit_rate_percent": self.stats.hit_rate_percent,
            }


_global_cache: Optional[PackumentCache] = None


def get_cache_manager() -> PackumentCache:
    """Get the process-wide packument cache."""
    global _global_cache
    if _global_cache is None:
        _global_cache = PackumentCache.from_config()
    return _global_cache


def reset_cache_manager() -> None:
    """Drop the process-wide packument cache (useful for testing)."""
    global _global_cache
    if _global_cache is not None:
        _global_cache.clear()
    _global_cache = None
