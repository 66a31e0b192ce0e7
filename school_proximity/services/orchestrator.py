"""
Batch orchestration of the Discovery -> Resolver pipeline over many origins.

A run moves Idle -> Running -> Completed | Cancelled | Failed. Origins are
processed in batches whose size adapts to how long the previous batch took,
with a fixed pause between batches to stay inside upstream rate limits.
Cancellation is cooperative: a token is polled at each step boundary and
in-flight steps are allowed to finish.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Sequence, Tuple, Union

from school_proximity.config import BatchConfig
from school_proximity.models import (
    AmenityCandidate,
    BatchRun,
    Category,
    OriginEntity,
    OriginOutcome,
    Progress,
    ProximityResult,
    RunReport,
    RunState,
    TravelMode,
    destination_category,
)
from school_proximity.providers.overpass_provider import AmenityDiscoveryService
from school_proximity.services.resolver import RouteDistanceResolver

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Progress], None]


class CancellationToken:
    """Polled cancellation flag shared between a run and whoever may stop it."""

    def __init__(self):
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def next_batch_size(current: int, elapsed: float, config: BatchConfig) -> int:
    """Grow after a fast batch, shrink after a slow one, stay within bounds."""
    if elapsed < config.fast_threshold and current < config.max_size:
        return current + 1
    if elapsed > config.slow_threshold and current > config.min_size:
        return current - 1
    return current


def partition_origins(origins: Sequence[OriginEntity]) -> Tuple[List[OriginEntity], List[OriginEntity]]:
    """Split origins into (valid, invalid) by whether they carry a usable location."""
    valid, invalid = [], []
    for origin in origins:
        if origin.location is not None and origin.location.is_valid():
            valid.append(origin)
        else:
            invalid.append(origin)
    return valid, invalid


class BatchOrchestrator:
    """Drives discovery and resolution for a set of origins, one run at a time."""

    def __init__(
        self,
        discovery: AmenityDiscoveryService,
        resolver: RouteDistanceResolver,
        batch_config: Optional[BatchConfig] = None,
        radius_tiers: Sequence[int] = (10000, 30000, 40000),
        clock: Callable[[], float] = time.monotonic,
    ):
        if not radius_tiers:
            raise ValueError("At least one search radius is required")
        self.discovery = discovery
        self.resolver = resolver
        self.batch_config = batch_config or BatchConfig()
        self.radius_tiers = list(radius_tiers)
        self._clock = clock

        self.state = RunState.IDLE
        self.batch_run = BatchRun()
        self._token: Optional[CancellationToken] = None
        self._results: List[ProximityResult] = []
        self._no_results: List[OriginEntity] = []
        self._on_progress: Optional[ProgressCallback] = None
        # fixed destinations for the current run; None means discover per origin
        self._destinations: Optional[List[AmenityCandidate]] = None

    @property
    def progress(self) -> dict:
        return {
            "state": self.state.value,
            "processed": self.batch_run.processed,
            "total": self.batch_run.total,
            "current_batch_size": self.batch_run.current_batch_size,
        }

    @property
    def results(self) -> List[ProximityResult]:
        """Results gathered so far by the current or last run."""
        return list(self._results)

    def cancel(self) -> None:
        """Ask the current run to stop at its next checkpoint."""
        if self._token is not None:
            self._token.cancel()
        self.batch_run.cancelled = True

    def _is_cancelled(self) -> bool:
        return self._token is not None and self._token.cancelled

    async def _discover(self, origin: OriginEntity, category: Category) -> Optional[List[AmenityCandidate]]:
        """Search each radius tier until one yields candidates.

        Returns None when cancellation is observed between tiers.
        """
        for radius in self.radius_tiers:
            if self._is_cancelled():
                return None
            candidates = await self.discovery.discover(origin.location, category, radius)
            if candidates:
                return candidates
            logger.debug("No %s within %sm of %s", category.key, radius, origin.display_name)
        return []

    async def _process_origin(self, origin: OriginEntity, category: Category,
                              travel_mode: TravelMode) -> OriginOutcome:
        if self._is_cancelled():
            return OriginOutcome.CANCELLED

        if self._destinations is not None:
            candidates = list(self._destinations)
        else:
            candidates = await self._discover(origin, category)
        if candidates is None or self._is_cancelled():
            return OriginOutcome.CANCELLED

        if not candidates:
            outcome = OriginOutcome.NO_RESULT
        else:
            result = await self.resolver.resolve(origin, candidates, travel_mode, category=category.key)
            if result is None:
                outcome = OriginOutcome.NO_RESULT
            else:
                self._results.append(result)
                outcome = OriginOutcome.RESOLVED

        if outcome is OriginOutcome.NO_RESULT:
            self._no_results.append(origin)
        self.batch_run.processed += 1
        if self._on_progress is not None:
            self._on_progress(Progress(self.batch_run.processed, self.batch_run.total))
        return outcome

    async def run(
        self,
        origins: Sequence[OriginEntity],
        category: Union[Category, str],
        travel_mode: Union[TravelMode, str] = TravelMode.WALKING,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        destinations: Optional[Sequence[AmenityCandidate]] = None,
    ) -> RunReport:
        """Resolve the nearest ``category`` amenity for every origin.

        With ``destinations`` every origin is routed to that fixed set instead
        and discovery is skipped; ``category`` then only labels the results
        and need not be a searchable category.

        Cancellation and provider failures are reported on the returned
        RunReport rather than raised; partial results are always kept.

        Raises:
            RuntimeError: when a run is already in progress on this orchestrator
            ValueError: for an unknown category or travel mode, or when
                ``destinations`` has no usable location
        """
        if self.state is RunState.RUNNING:
            raise RuntimeError("A run is already in progress")
        cat = self.discovery.resolve_category(category)
        if cat is None and destinations is not None:
            cat = destination_category(str(category))
        if cat is None:
            raise ValueError(f"Unknown category: {category}")
        fixed = None
        if destinations is not None:
            fixed = [d for d in destinations if d.location is not None and d.location.is_valid()]
            if not fixed:
                raise ValueError("No destination has a usable location")
        mode = TravelMode(travel_mode)

        valid, invalid = partition_origins(origins)
        self.state = RunState.RUNNING
        self.batch_run = BatchRun(total=len(valid), current_batch_size=self.batch_config.initial_size)
        self._token = token or CancellationToken()
        self._results = []
        self._no_results = []
        self._on_progress = on_progress
        self._destinations = fixed

        for origin in invalid:
            logger.warning("Skipping origin %s (%s): missing or malformed coordinates",
                           origin.id, origin.display_name)
        logger.info("Run started: %d origins (%d invalid), category=%s, mode=%s, destinations=%s",
                    len(valid), len(invalid), cat.key, mode.value,
                    len(fixed) if fixed is not None else "discovered")

        started = self._clock()
        batches = 0
        error: Optional[BaseException] = None
        index = 0
        try:
            while index < len(valid):
                if self._is_cancelled():
                    break
                size = self.batch_run.current_batch_size
                batch = valid[index:index + size]
                batch_started = self._clock()
                outcomes = await asyncio.gather(
                    *(self._process_origin(origin, cat, mode) for origin in batch),
                    return_exceptions=True,
                )
                index += len(batch)
                batches += 1

                for origin, outcome in zip(batch, outcomes):
                    if isinstance(outcome, asyncio.CancelledError):
                        self._token.cancel()
                    elif isinstance(outcome, BaseException) and error is None:
                        error = outcome
                        logger.error("Origin %s failed: %r", origin.id, outcome)
                if error is not None:
                    break

                elapsed = self._clock() - batch_started
                self.batch_run.current_batch_size = next_batch_size(size, elapsed, self.batch_config)
                logger.debug("Batch %d: %d origins in %.2fs, next size %d",
                             batches, len(batch), elapsed, self.batch_run.current_batch_size)

                if index < len(valid) and not self._is_cancelled() and self.batch_config.delay_ms > 0:
                    await asyncio.sleep(self.batch_config.delay_ms / 1000.0)
        except asyncio.CancelledError:
            # the task driving the run was cancelled outright
            self._token.cancel()
            self.state = RunState.CANCELLED
            raise
        finally:
            self.batch_run.cancelled = self._is_cancelled()

        if error is not None:
            state = RunState.FAILED
            logger.error("Run failed after %d/%d origins", self.batch_run.processed, self.batch_run.total,
                         exc_info=error)
        elif self.batch_run.cancelled:
            state = RunState.CANCELLED
            logger.info("Run cancelled after %d/%d origins", self.batch_run.processed, self.batch_run.total)
        else:
            state = RunState.COMPLETED
            logger.info("Run completed: %d results, %d without result, %d invalid",
                        len(self._results), len(self._no_results), len(invalid))
        self.state = state

        return RunReport(
            state=state,
            results=list(self._results),
            invalid=invalid,
            no_results=list(self._no_results),
            error=error,
            batches=batches,
            elapsed=self._clock() - started,
        )
