"""OSRM routing provider.

Talks to an OSRM server over HTTP and returns normalized RouteLeg values:
- converts internal Location to OSRM "lon,lat" coordinates
- builds /route and /table URLs
- maps OSRM error codes onto the provider error taxonomy
"""
from typing import Dict, List, Optional, Sequence

import aiohttp

from school_proximity.models import Location, RouteLeg, RouteStep, TravelMode
from school_proximity.providers.base import (
    RoutingProvider,
    PARSE_ERRORS,
    ProviderError,
    RouteNotFoundError,
    MalformedResponseError,
)
from school_proximity.providers.utils import http_get_json

# OSRM profile per travel mode; a server built with other profile names can override
DEFAULT_PROFILES = {
    TravelMode.WALKING: "foot",
    TravelMode.DRIVING: "driving",
    TravelMode.CYCLING: "bike",
}

NO_ROUTE_CODES = ("NoRoute", "NoSegment")


def format_coordinates(coords: Sequence[Location]) -> str:
    """Convert locations to OSRM format 'lon,lat;lon,lat;...'"""
    return ";".join(f"{loc.lon},{loc.lat}" for loc in coords)


def _check_code(data) -> None:
    if not isinstance(data, dict):
        raise MalformedResponseError("OSRM response is not an object")
    code = data.get("code")
    if code == "Ok":
        return
    message = data.get("message", "Unknown error")
    if code in NO_ROUTE_CODES:
        raise RouteNotFoundError(f"OSRM {code}: {message}")
    raise ProviderError(f"OSRM error {code}: {message}")


def _parse_steps(leg: dict) -> tuple:
    steps = []
    for step in leg.get("steps") or []:
        maneuver = step.get("maneuver") or {}
        parts = [maneuver.get("type"), maneuver.get("modifier")]
        instruction = " ".join(str(p) for p in parts if p) or "continue"
        if step.get("name"):
            instruction = f"{instruction} onto {step['name']}"
        steps.append(RouteStep(
            instruction=instruction,
            distance_m=float(step.get("distance") or 0.0),
            duration_sec=float(step.get("duration") or 0.0),
        ))
    return tuple(steps)


def _parse_route(route: dict, candidate_id: str) -> RouteLeg:
    legs = route.get("legs") or []
    if not legs:
        raise MalformedResponseError("OSRM route has no legs")
    geometry = route.get("geometry")
    return RouteLeg(
        candidate_id=candidate_id,
        distance_km=float(route["distance"]) / 1000.0,
        duration_sec=float(route["duration"]),
        path_encoding=geometry if isinstance(geometry, str) else None,
        steps=_parse_steps(legs[0]),
    )


class OSRMRoutingProvider(RoutingProvider):
    name = "osrm"
    supports_table = True

    def __init__(self, session: aiohttp.ClientSession, base_url: str,
                 timeout: float = 20.0, profiles: Optional[Dict[TravelMode, str]] = None):
        super().__init__()
        if not base_url:
            raise ValueError("OSRM base URL is required")
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.profiles = dict(DEFAULT_PROFILES)
        if profiles:
            self.profiles.update(profiles)

    def profile_for(self, travel_mode: TravelMode) -> str:
        return self.profiles[TravelMode(travel_mode)]

    async def route(self, origin: Location, destination: Location,
                    travel_mode: TravelMode, candidate_id: str = "") -> RouteLeg:
        """Call /route and return distance (km), duration (s), polyline and steps."""
        coordinates = format_coordinates([origin, destination])
        url = f"{self.base_url}/route/v1/{self.profile_for(travel_mode)}/{coordinates}"
        data = await http_get_json(
            self.session,
            url,
            params={"overview": "full", "geometries": "polyline", "steps": "true"},
            timeout=self.timeout,
        )
        _check_code(data)

        routes = data.get("routes") or []
        if not routes:
            raise RouteNotFoundError("OSRM returned no routes")
        try:
            # OSRM may return alternatives; the first is the best
            return _parse_route(routes[0], candidate_id)
        except PARSE_ERRORS as e:
            raise MalformedResponseError(f"OSRM route payload is malformed: {e!r}") from e

    async def table(self, origin: Location, destinations: Sequence[Location],
                    travel_mode: TravelMode) -> List[Optional[RouteLeg]]:
        """Call /table with the origin as the only source.

        Returns one RouteLeg per destination (no path/steps), None where
        OSRM reports no route.
        """
        if not destinations:
            return []
        coordinates = format_coordinates([origin, *destinations])
        destination_index = ";".join(str(i) for i in range(1, len(destinations) + 1))
        url = f"{self.base_url}/table/v1/{self.profile_for(travel_mode)}/{coordinates}"
        data = await http_get_json(
            self.session,
            url,
            params={
                "sources": "0",
                "destinations": destination_index,
                "annotations": "duration,distance",
            },
            timeout=self.timeout,
        )
        _check_code(data)

        try:
            distances = data["distances"][0]
            durations = data["durations"][0]
            if len(distances) != len(destinations) or len(durations) != len(destinations):
                raise MalformedResponseError("OSRM table size does not match destinations")

            out: List[Optional[RouteLeg]] = []
            for distance, duration in zip(distances, durations):
                if distance is None or duration is None:
                    out.append(None)
                    continue
                out.append(RouteLeg(candidate_id="", distance_km=float(distance) / 1000.0,
                                    duration_sec=float(duration)))
            return out
        except PARSE_ERRORS as e:
            raise MalformedResponseError(f"OSRM table payload is malformed: {e!r}") from e
