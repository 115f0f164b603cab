"""Time-bounded LRU cache with explicit invalidation."""
from __future__ import annotations

import hashlib
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


def text_key(*parts: object) -> str:
    """Stable cache key from arbitrary parts, hashed so long texts stay compact."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(str(part).encode("utf-8"))
        digest.update(b"\x1f")
    return digest.hexdigest()


class TTLCache:
    """Thread-safe TTL cache with LRU eviction once ``maxsize`` is reached."""

    def __init__(
        self,
        maxsize: int = 512,
        ttl_seconds: float = 3600,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.maxsize = maxsize
        self.ttl = ttl_seconds
        self.name = name
        self._clock = clock
        self._cache: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.stats = CacheStats()

    def get(self, key: str) -> tuple[bool, Optional[Any]]:
        """Return ``(hit, value)``; expired entries count as misses and are dropped."""
        with self._lock:
            if key not in self._cache:
                self.stats.misses += 1
                return False, None
            value, stored_at = self._cache[key]
            if self._clock() - stored_at >= self.ttl:
                del self._cache[key]
                self.stats.misses += 1
                self.stats.evictions += 1
                return False, None
            self._cache.move_to_end(key)
            self.stats.hits += 1
            return True, value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key in self._cache:
                del self._cache[key]
            while len(self._cache) >= self.maxsize:
                self._cache.popitem(last=False)
                self.stats.evictions += 1
            self._cache[key] = (value, self._clock())

    def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry and return how many were removed."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def get_stats(self) -> dict:
        with self._lock:
            size = len(self._cache)
        return {
            "name": self.name,
            "size": size,
            "maxsize": self.maxsize,
            "ttl_seconds": self.ttl,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "evictions": self.stats.evictions,
            "hit_rate": round(self.stats.hit_rate, 4),
        }
