"""
TTL + LRU cache in front of the trajectory prediction API.

Accessed from the telemetry thread and from prediction worker threads, so
every operation holds the cache lock.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from prediction.metrics import CACHE_EVICTIONS, CACHE_LOOKUPS, CACHE_SIZE

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_CAPACITY = 100


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    inserted_at: float
    version: int = 0
    access_count: int = 1


@dataclass
class CacheKeyParams:
    """Quantization used to build cache keys."""
    coordinate_step_deg: float = 0.1
    altitude_step_m: float = 500.0
    time_bucket_s: float = 300.0


def _quantize(value: float, step: float) -> float:
    return round(value / step) * step


def make_cache_key(
    subject_id: str,
    lat: float,
    lon: float,
    altitude_m: float,
    at: float,
    params: Optional[CacheKeyParams] = None,
) -> str:
    """
    Coarse key so near-duplicate requests (slow ascent, hovering) hit.

    Example: "S1234567-47.40-8.50-12000-5821964"
    """
    p = params or CacheKeyParams()
    qlat = _quantize(lat, p.coordinate_step_deg)
    qlon = _quantize(lon, p.coordinate_step_deg)
    qalt = _quantize(altitude_m, p.altitude_step_m)
    bucket = int(at // p.time_bucket_s)
    return f"{subject_id}-{qlat:.2f}-{qlon:.2f}-{qalt:.0f}-{bucket}"


class PredictionCache:
    """
    Capacity-bounded LRU map with per-entry TTL.

    Expired entries are swept lazily on every get/set; an expired entry is
    never returned as a hit.
    """

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self.expirations = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            self._sweep_expired()
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                CACHE_LOOKUPS.labels(result="miss").inc()
                logger.debug(f"PredictionCache: miss for {key}")
                return None

            self._entries[key] = replace(entry, access_count=entry.access_count + 1)
            self._entries.move_to_end(key)
            self.hits += 1
            CACHE_LOOKUPS.labels(result="hit").inc()
            logger.debug(
                f"PredictionCache: hit for {key} (v{entry.version}, accessed {entry.access_count + 1} times)"
            )
            return entry.value

    def set(self, key: str, value: Any, version: int = 0):
        with self._lock:
            self._sweep_expired()
            if key not in self._entries and len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
                CACHE_EVICTIONS.labels(reason="lru").inc()
                logger.debug(f"PredictionCache: evicted LRU entry {evicted}")

            self._entries[key] = CacheEntry(value=value, inserted_at=self._clock(), version=version)
            self._entries.move_to_end(key)
            CACHE_SIZE.set(len(self._entries))

    def _sweep_expired(self):
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.inserted_at > self.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            self.expirations += len(expired)
            CACHE_EVICTIONS.labels(reason="expired").inc(len(expired))
            CACHE_SIZE.set(len(self._entries))
            logger.debug(f"PredictionCache: cleaned {len(expired)} expired entries")

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def metrics(self) -> dict:
        """Snapshot of cache statistics."""
        with self._lock:
            now = self._clock()
            valid = [e for e in self._entries.values() if now - e.inserted_at <= self.ttl]
            total = self.hits + self.misses
            return {
                "total_entries": len(self._entries),
                "valid_entries": len(valid),
                "hit_rate": self.hits / total if total else 0.0,
                "hits": self.hits,
                "misses": self.misses,
                "evictions": self.evictions,
                "expirations": self.expirations,
                "average_age": sum(now - e.inserted_at for e in valid) / len(valid) if valid else 0.0,
                "capacity": self.capacity,
                "ttl": self.ttl,
            }
