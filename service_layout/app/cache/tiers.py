"""
In-process TTL/LRU cache tiers for the layout resolver.

Storage is a ``cachetools.TLRUCache`` per tier: entries carry their own
time-to-use, and the least recently used entry goes first at capacity.
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple, TYPE_CHECKING

from cachetools import TLRUCache

from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


@dataclass
class _Entry:
    value: Any
    ttl: float


def _time_to_use(key: Hashable, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class _TierCache(TLRUCache):
    """TLRUCache that tallies capacity evictions and expirations."""

    def __init__(self, maxsize: int, timer: Callable[[], float]):
        super().__init__(maxsize, _time_to_use, timer=timer)
        self.evictions = 0
        self.expirations = 0

    def popitem(self):
        key, entry = super().popitem()
        self.evictions += 1
        return key, entry

    def expire(self, time=None) -> List[Tuple[Hashable, _Entry]]:
        expired = super().expire(time)
        self.expirations += len(expired)
        return expired


class CacheTier:
    """One TTL-bounded cache with least-recently-used eviction at capacity.

    Values are never ``None``; ``get`` returns ``None`` for absent or expired
    keys. A miss purges expired entries, and ``evict_expired`` does the same
    on the maintenance schedule.
    """

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_entries: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional["MetricsCollector"] = None,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.metrics = metrics
        self.logger = get_logger(f"layout.cache.{name}")
        self._clock = clock
        self._entries = _TierCache(max_entries, clock)
        # cachetools caches are not thread-safe
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0

    @property
    def evictions(self) -> int:
        return self._entries.evictions

    @property
    def expirations(self) -> int:
        return self._entries.expirations

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value or None."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                self._entries.expire()
            else:
                self.hits += 1

        self._record_access(hit=entry is not None)
        return entry.value if entry is not None else None

    def put(self, key: Hashable, value: Any, ttl: Optional[float] = None):
        """Store a value, evicting the least recently used entry when full."""
        if value is None:
            raise ValueError("cache values must not be None")

        ttl = self.ttl_seconds if ttl is None else ttl
        with self._lock:
            if ttl <= 0:
                self._entries.pop(key, None)
            else:
                self._entries[key] = _Entry(value, ttl)
            size = len(self._entries)

        if self.metrics:
            self.metrics.set_gauge("cache_entries", size, tier=self.name)

    def invalidate(self, key: Hashable) -> bool:
        """Drop a single key. Returns whether it was present."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def evict_expired(self) -> int:
        """Remove every expired entry.

        The expiry list is ordered, so the lock is held only while the
        expired entries themselves are unlinked.
        """
        with self._lock:
            removed = len(self._entries.expire())
            size = len(self._entries)
        if removed:
            self.logger.debug("Evicted expired entries", tier=self.name, count=removed)
        if self.metrics:
            self.metrics.set_gauge("cache_entries", size, tier=self.name)
        return removed

    def clear(self):
        with self._lock:
            evictions, expirations = self._entries.evictions, self._entries.expirations
            self._entries = _TierCache(self.max_entries, self._clock)
            self._entries.evictions, self._entries.expirations = evictions, expirations

    def counters(self) -> Tuple[int, int]:
        """(hits, misses) since creation."""
        with self._lock:
            return self.hits, self.misses

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self.hits + self.misses
            return {
                "tier": self.name,
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "expirations": self.expirations,
                "hit_ratio": self.hits / total if total else 0.0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _record_access(self, hit: bool):
        if self.metrics:
            metric = "cache_hits_total" if hit else "cache_misses_total"
            self.metrics.increment_counter(metric, tier=self.name)


@dataclass
class LayoutCaches:
    """The three independently expiring tiers used by a resolver."""
    preferences: CacheTier
    templates: CacheTier
    overrides: CacheTier

    @classmethod
    def from_config(
        cls,
        config: "BaseConfig",
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "LayoutCaches":
        return cls(
            preferences=CacheTier(
                "preferences",
                config.preference_cache_ttl_seconds,
                config.preference_cache_max_entries,
                clock=clock,
                metrics=metrics,
            ),
            templates=CacheTier(
                "templates",
                config.template_cache_ttl_seconds,
                config.template_cache_max_entries,
                clock=clock,
                metrics=metrics,
            ),
            overrides=CacheTier(
                "overrides",
                config.override_cache_ttl_seconds,
                config.override_cache_max_entries,
                clock=clock,
                metrics=metrics,
            ),
        )

    def tiers(self) -> Tuple[CacheTier, CacheTier, CacheTier]:
        return self.preferences, self.templates, self.overrides

    def evict_expired(self) -> Dict[str, int]:
        return {tier.name: tier.evict_expired() for tier in self.tiers()}

    def clear(self):
        for tier in self.tiers():
            tier.clear()

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {tier.name: tier.stats() for tier in self.tiers()}
