from .base import (
    RoutingProvider,
    ProviderError,
    ProviderAuthError,
    RouteNotFoundError,
    MalformedResponseError,
)
from .caching import GeoCache, make_key
from .overpass_provider import AmenityDiscoveryService
from .osrm_provider import OSRMRoutingProvider
from .directions_provider import DirectionsRoutingProvider

__all__ = [
    "RoutingProvider",
    "ProviderError",
    "ProviderAuthError",
    "RouteNotFoundError",
    "MalformedResponseError",
    "GeoCache",
    "make_key",
    "AmenityDiscoveryService",
    "OSRMRoutingProvider",
    "DirectionsRoutingProvider",
]
