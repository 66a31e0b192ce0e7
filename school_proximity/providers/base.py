"""
Provider base interfaces and error taxonomy.

Transient failures (timeouts, 5xx, malformed payloads, missing routes) are
``ProviderError``s and are absorbed by the callers. ``ProviderAuthError`` is
systemic: it is propagated so a whole run can be halted.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
import logging

from school_proximity.models import Location, RouteLeg, TravelMode


class ProviderError(Exception):
    """A provider call failed in a way that only affects this request."""
    pass


class ProviderAuthError(ProviderError):
    """The provider rejected our credentials; every further call will fail too."""
    pass


class RouteNotFoundError(ProviderError):
    """The provider answered but has no route between the two points."""
    pass


class MalformedResponseError(ProviderError):
    """The provider answered with a payload we cannot interpret."""
    pass


# raised by payload normalization on unexpected shapes; providers re-raise them as MalformedResponseError
PARSE_ERRORS = (KeyError, IndexError, TypeError, ValueError, AttributeError)


class RoutingProvider(ABC):
    """Base routing interface.

    Implementations talk to one routing backend and return normalized
    ``RouteLeg`` values; they do not pick winners or apply limits.
    """

    name = "routing"
    supports_table = False

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    async def route(self, origin: Location, destination: Location,
                    travel_mode: TravelMode, candidate_id: str = "") -> RouteLeg:
        """Route one origin to one destination.

        Raises:
            ProviderError: on any failure for this pair
            ProviderAuthError: when the backend rejects our credentials
        """
        pass

    async def table(self, origin: Location, destinations: Sequence[Location],
                    travel_mode: TravelMode) -> List[Optional[RouteLeg]]:
        """Distances from one origin to many destinations in a single call.

        Returns one entry per destination, None where unreachable. Only
        providers with ``supports_table`` implement it.
        """
        raise NotImplementedError(f"{self.name} does not support table requests")
