"""Overpass amenity discovery.

Resolves a category + location + radius into AmenityCandidate entries using
a pool of interchangeable Overpass instances. Instances are tried round-robin
with a bounded number of retries; total failure degrades to an empty list so
callers treat it as "no candidates found".
"""
from typing import Dict, List, Optional, Sequence, Union
import logging
import time

import aiohttp

from school_proximity import metrics
from school_proximity.models import AmenityCandidate, Category, Location
from school_proximity.providers.base import ProviderError, MalformedResponseError
from school_proximity.providers.caching import GeoCache, make_key
from school_proximity.providers.utils import http_post_json

logger = logging.getLogger(__name__)

# Public Overpass endpoints used when none are configured
OVERPASS_URLS = [
    "https://overpass-api.de/api/interpreter",
    "https://overpass.kumi.systems/api/interpreter",
    "https://lz4.overpass-api.de/api/interpreter",
    "https://z.overpass-api.de/api/interpreter",
]

HEADERS = {"User-Agent": "SchoolProximity/1.0", "Accept": "application/json"}


def build_query(category: Category, location: Location, radius: int, server_timeout: int = 30) -> str:
    """Overpass QL for nodes tagged ``category.tag`` within ``radius`` meters."""
    return (
        f"[out:json][timeout:{server_timeout}];"
        f"node[{category.tag}](around:{radius},{location.lat},{location.lon});"
        f"out body;"
    )


def parse_elements(payload, category: Category) -> List[AmenityCandidate]:
    """Normalize an Overpass response into candidates.

    Raises:
        MalformedResponseError: when the payload has no ``elements`` list
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("elements"), list):
        raise MalformedResponseError("Overpass response has no elements list")
    out = []
    for el in payload["elements"]:
        if not isinstance(el, dict):
            continue
        try:
            loc = Location(float(el["lat"]), float(el["lon"]))
        except (KeyError, TypeError, ValueError):
            continue
        tags = el.get("tags")
        if not isinstance(tags, dict):
            tags = {}
        name = tags.get("name")
        out.append(AmenityCandidate(
            id=str(el.get("id", "")),
            name=str(name) if name else f"Unnamed {category.label}",
            location=loc,
            category=category.key,
        ))
    return out


class AmenityDiscoveryService:
    """Finds candidate points of interest around a location."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        cache: GeoCache,
        categories: Dict[str, Category],
        urls: Optional[Sequence[str]] = None,
        max_retries: int = 3,
        timeout: float = 15.0,
        server_timeout: int = 30,
    ):
        self.session = session
        self.cache = cache
        self.categories = categories
        self.urls = list(urls or OVERPASS_URLS)
        if not self.urls:
            raise ValueError("AmenityDiscoveryService needs at least one Overpass URL")
        self.max_retries = max_retries
        self.timeout = timeout
        self.server_timeout = server_timeout
        self._cursor = 0

    def resolve_category(self, category: Union[Category, str]) -> Optional[Category]:
        if isinstance(category, Category):
            return category
        return self.categories.get(category)

    async def discover(self, location: Location, category: Union[Category, str],
                       radius: int) -> List[AmenityCandidate]:
        """Candidates of ``category`` within ``radius`` meters of ``location``.

        Never raises for backend trouble: exhausting every attempt returns [].
        """
        cat = self.resolve_category(category)
        if cat is None or not cat.tag:
            logger.debug("No backend tag for category %r; skipping discovery", category)
            return []

        key = make_key(location, radius, cat.key)
        self.cache.evict_expired()
        cached = self.cache.get(key)
        if cached is not None:
            metrics.increment("discovery.cache_hit")
            return cached
        metrics.increment("discovery.cache_miss")

        query = build_query(cat, location, radius, self.server_timeout)
        start_index = self._cursor
        self._cursor += 1

        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            url = self.urls[(start_index + attempt) % len(self.urls)]
            metrics.increment("discovery.attempt")
            started = time.perf_counter()
            try:
                payload = await http_post_json(self.session, url, data={"data": query},
                                               headers=HEADERS, timeout=self.timeout)
                candidates = parse_elements(payload, cat)
            except ProviderError as e:
                last_error = e
                metrics.increment("discovery.failure")
                logger.warning("Overpass attempt %d/%d on %s failed: %s",
                               attempt + 1, self.max_retries + 1, url, e)
                continue
            finally:
                metrics.observe_latency("discovery.request_ms", (time.perf_counter() - started) * 1000)

            logger.debug("Overpass %s returned %d %s candidates near %s,%s (r=%s)",
                         url, len(candidates), cat.key, location.lat, location.lon, radius)
            self.cache.put(key, candidates)
            return candidates

        metrics.increment("discovery.exhausted")
        logger.warning("Discovery of %s near %s,%s (r=%s) gave up after %d attempts: %s",
                       cat.key, location.lat, location.lon, radius, self.max_retries + 1, last_error)
        return []
