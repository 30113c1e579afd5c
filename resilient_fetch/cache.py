import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    ttl_s: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl_s


@dataclass(frozen=True)
class CacheStats:
    size: int
    capacity: int
    hits: int
    misses: int
    evictions: int
    expirations: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    @property
    def miss_rate(self) -> float:
        total = self.hits + self.misses
        return self.misses / total if total else 0.0


class CacheStore:
    """
    Bounded in-memory cache of extracted results with TTL.

    What this implementation does:
    - Keeps at most `capacity` entries; on overflow, expired entries are
      purged first, then the least recently used entry is evicted
    - Expires entries lazily: a read after `ttl_s` is a miss
    - Counts hits, misses, evictions and expirations for the stats surface

    Methods never suspend, so concurrent tasks always see a consistent store
    and concurrent writes for one key are last-writer-wins.
    """

    def __init__(self, capacity: int = 1000, ttl_s: float = 300.0, clock: Callable[[], float] = time.monotonic):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any | None:
        """
        Returns the cached value, or None if absent or expired.
        A hit marks the entry as most recently used.
        """
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("cache MISS %s", key)
            return None

        if entry.expired(self._clock()):
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            logger.debug("cache EXPIRED %s", key)
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        logger.debug("cache HIT %s", key)
        return entry.value

    def put(self, key: str, value: Any, ttl_s: float | None = None) -> None:
        ttl = self.ttl_s if ttl_s is None else ttl_s
        if ttl <= 0:
            return

        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl_s=ttl)

        if len(self._entries) > self.capacity:
            self.cleanup()
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            logger.debug("cache EVICT %s", evicted)

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expired(now)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        if expired:
            logger.debug("cache cleanup removed %d expired entries", len(expired))
        return len(expired)

    def clear(self) -> int:
        """Drop all entries; returns how many were removed."""
        count = len(self._entries)
        self._entries.clear()
        logger.warning("cache cleared (%d entries)", count)
        return count

    def stats(self) -> CacheStats:
        return CacheStats(
            size=len(self._entries),
            capacity=self.capacity,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )
