"""
Caching utilities for providers.

GeoCache memoizes complete amenity lookups for one process. Expiry is lazy:
callers sweep with evict_expired() before touching the cache, there is no
background timer and no size cap.
"""
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple
import logging
import time

from school_proximity.models import AmenityCandidate, Location


logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 3600000


def make_key(location: Location, radius: int, category: str) -> str:
    """Cache key: coordinates quantized to 4 decimals, radius and category key."""
    return f"{location.lat:.4f}_{location.lon:.4f}_{radius}_{category}"


@dataclass(frozen=True)
class CacheEntry:
    key: str
    candidates: Tuple[AmenityCandidate, ...]
    inserted_at: float  # clock seconds


class GeoCache:
    """TTL cache of discovery responses keyed by ``make_key``."""

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS, clock: Callable[[], float] = time.monotonic):
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return (now - entry.inserted_at) * 1000.0 > self.ttl_ms

    def evict_expired(self) -> int:
        """Drop every entry older than the TTL. Returns how many were removed."""
        now = self._clock()
        stale = [k for k, entry in self._entries.items() if self._expired(entry, now)]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.debug("Evicted %d expired geo cache entries", len(stale))
        return len(stale)

    def get(self, key: str) -> Optional[List[AmenityCandidate]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._expired(entry, self._clock()):
            del self._entries[key]
            return None
        return list(entry.candidates)

    def put(self, key: str, candidates: List[AmenityCandidate]) -> None:
        # empty answers are never cached so they can be retried right away
        if not candidates:
            return
        self._entries[key] = CacheEntry(key, tuple(candidates), self._clock())

    def clear(self) -> None:
        self._entries.clear()
