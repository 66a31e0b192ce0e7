"""
Route distance resolution: from one origin to N candidates, pick the nearest
by travel distance.

Per-candidate provider failures are isolated and only shrink the candidate
set. ``ProviderAuthError`` is the exception: it is re-raised once the
fan-out has settled, because every other request would fail the same way.
"""

import asyncio
import logging
import time
from typing import List, Optional, Sequence

from school_proximity import metrics
from school_proximity.models import AmenityCandidate, OriginEntity, ProximityResult, RouteLeg, TravelMode
from school_proximity.providers.base import ProviderAuthError, ProviderError, RoutingProvider
from school_proximity.utils.async_utils import gather_with_concurrency

logger = logging.getLogger(__name__)


def select_nearest(legs: Sequence[Optional[RouteLeg]]) -> Optional[int]:
    """Index of the shortest leg; the first one wins ties. None entries are skipped."""
    best_index = None
    best_distance = None
    for i, leg in enumerate(legs):
        if leg is None:
            continue
        if best_distance is None or leg.distance_km < best_distance:
            best_index = i
            best_distance = leg.distance_km
    return best_index


class RouteDistanceResolver:
    """Computes travel metrics to each candidate under a concurrency limit."""

    def __init__(
        self,
        provider: RoutingProvider,
        concurrency: int = 3,
        timeout: float = 20.0,
        limiter: Optional[asyncio.Semaphore] = None,
        use_table: bool = False,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.provider = provider
        self.concurrency = concurrency
        self.timeout = timeout
        # shared across resolve() calls when given, otherwise one limiter per call
        self.limiter = limiter
        self.use_table = use_table and provider.supports_table

    async def resolve(
        self,
        origin: OriginEntity,
        candidates: Sequence[AmenityCandidate],
        travel_mode: TravelMode,
        category: Optional[str] = None,
    ) -> Optional[ProximityResult]:
        """Nearest reachable candidate for ``origin``, or None if none is reachable.

        Raises:
            ProviderAuthError: the routing backend rejected our credentials
        """
        if origin.location is None or not origin.location.is_valid():
            logger.warning("Origin %s has no valid location; nothing to resolve", origin.id)
            return None

        valid = [c for c in candidates if c.location is not None and c.location.is_valid()]
        if len(valid) < len(candidates):
            logger.debug("Dropped %d candidates without valid coordinates for %s",
                         len(candidates) - len(valid), origin.display_name)
        if not valid:
            return None

        started = time.perf_counter()
        if self.use_table:
            legs = await self._table_legs(origin, valid, travel_mode)
        else:
            legs = await self._route_legs(origin, valid, travel_mode)
        metrics.observe_latency("routing.resolve_ms", (time.perf_counter() - started) * 1000)

        best = select_nearest(legs)
        if best is None:
            metrics.increment("routing.no_reachable")
            logger.info("No reachable candidate for %s (%d tried)", origin.display_name, len(valid))
            return None

        leg = legs[best]
        winner = valid[best]
        return ProximityResult(
            origin_id=origin.id,
            origin_name=origin.display_name,
            candidate_id=winner.id,
            candidate_name=winner.name,
            distance_km=leg.distance_km,
            duration_sec=leg.duration_sec,
            travel_mode=TravelMode(travel_mode),
            path_encoding=leg.path_encoding,
            category=category or winner.category,
            origin_location=origin.location,
            candidate_location=winner.location,
            steps=leg.steps,
        )

    async def _route_one(self, origin: OriginEntity, candidate: AmenityCandidate,
                         travel_mode: TravelMode) -> RouteLeg:
        metrics.increment("routing.request")
        return await asyncio.wait_for(
            self.provider.route(origin.location, candidate.location, travel_mode, candidate_id=candidate.id),
            timeout=self.timeout,
        )

    async def _route_legs(self, origin: OriginEntity, candidates: List[AmenityCandidate],
                          travel_mode: TravelMode) -> List[Optional[RouteLeg]]:
        outcomes = await gather_with_concurrency(
            self.concurrency,
            [self._route_one(origin, c, travel_mode) for c in candidates],
            semaphore=self.limiter,
        )

        legs: List[Optional[RouteLeg]] = []
        auth_error: Optional[ProviderAuthError] = None
        for candidate, outcome in zip(candidates, outcomes):
            if isinstance(outcome, ProviderAuthError):
                auth_error = auth_error or outcome
                legs.append(None)
            elif isinstance(outcome, (ProviderError, asyncio.TimeoutError)):
                metrics.increment("routing.failure")
                logger.warning("Routing %s -> %s failed: %s",
                               origin.display_name, candidate.name, str(outcome) or type(outcome).__name__)
                legs.append(None)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                legs.append(outcome)

        if auth_error is not None:
            raise auth_error
        return legs

    async def _table_legs(self, origin: OriginEntity, candidates: List[AmenityCandidate],
                          travel_mode: TravelMode) -> List[Optional[RouteLeg]]:
        metrics.increment("routing.request")
        limiter = self.limiter or asyncio.Semaphore(1)
        try:
            async with limiter:
                table = await asyncio.wait_for(
                    self.provider.table(origin.location, [c.location for c in candidates], travel_mode),
                    timeout=self.timeout,
                )
        except ProviderAuthError:
            raise
        except (ProviderError, asyncio.TimeoutError) as e:
            metrics.increment("routing.failure")
            logger.warning("Routing table for %s failed: %s", origin.display_name, str(e) or type(e).__name__)
            return [None] * len(candidates)

        legs: List[Optional[RouteLeg]] = []
        for candidate, leg in zip(candidates, table):
            if leg is None:
                metrics.increment("routing.failure")
                legs.append(None)
            else:
                legs.append(RouteLeg(candidate.id, leg.distance_km, leg.duration_sec,
                                     leg.path_encoding, leg.steps))
        return legs
