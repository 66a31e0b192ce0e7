"""
Wiring of providers and services from configuration.

A Pipeline holds the process-wide pieces (HTTP session, geo cache, optional
global routing limiter) and hands out a fresh orchestrator per run.
"""
import asyncio
import logging
from typing import Optional

import aiohttp

from school_proximity.config import Config, get_config
from school_proximity.providers.base import RoutingProvider
from school_proximity.providers.caching import GeoCache
from school_proximity.providers.directions_provider import DirectionsRoutingProvider
from school_proximity.providers.osrm_provider import OSRMRoutingProvider
from school_proximity.providers.overpass_provider import AmenityDiscoveryService
from school_proximity.services.orchestrator import BatchOrchestrator
from school_proximity.services.persistence import HttpResultStore
from school_proximity.services.resolver import RouteDistanceResolver

logger = logging.getLogger(__name__)


def build_routing_provider(config: Config, session: aiohttp.ClientSession) -> RoutingProvider:
    routing = config.routing_config
    timeout = config.get_timeout('routing')
    if routing.provider == 'directions':
        return DirectionsRoutingProvider(session, routing.directions_url,
                                         api_key=routing.directions_api_key, timeout=timeout)
    return OSRMRoutingProvider(session, routing.osrm_url, timeout=timeout)


class Pipeline:
    def __init__(self, session: aiohttp.ClientSession, config: Optional[Config] = None,
                 cache: Optional[GeoCache] = None):
        self.config = config or get_config()
        self.session = session
        self.cache = cache or GeoCache(ttl_ms=self.config.cache_config.ttl_ms)
        self.discovery = AmenityDiscoveryService(
            session,
            self.cache,
            self.config.categories,
            urls=self.config.discovery_config.overpass_urls,
            max_retries=self.config.discovery_config.max_retries,
            timeout=self.config.get_timeout('discovery'),
            server_timeout=self.config.timeout_config.overpass_server,
        )
        self.routing_provider = build_routing_provider(self.config, session)

        global_limit = self.config.routing_config.global_concurrency
        self.limiter = asyncio.Semaphore(global_limit) if global_limit > 0 else None
        if self.limiter is not None:
            logger.info("Routing requests limited to %d in flight process-wide", global_limit)

    def new_resolver(self) -> RouteDistanceResolver:
        routing = self.config.routing_config
        return RouteDistanceResolver(
            self.routing_provider,
            concurrency=routing.concurrency,
            timeout=self.config.get_timeout('routing'),
            limiter=self.limiter,
            use_table=routing.use_table,
        )

    def new_orchestrator(self) -> BatchOrchestrator:
        return BatchOrchestrator(
            self.discovery,
            self.new_resolver(),
            batch_config=self.config.batch_config,
            radius_tiers=self.config.discovery_config.radius_tiers,
        )

    def result_store(self) -> Optional[HttpResultStore]:
        url = self.config.persistence_config.url
        if not url:
            return None
        return HttpResultStore(self.session, url, timeout=self.config.get_timeout('persistence'))
