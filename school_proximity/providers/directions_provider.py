"""Directions-API routing provider.

Speaks the Google Directions response shape (``status``, ``routes[0].legs[0]``,
``overview_polyline.points``), either directly or through a proxy that keeps
the API key server side.
"""
from typing import Optional
import re

import aiohttp

from school_proximity.models import Location, RouteLeg, RouteStep, TravelMode
from school_proximity.providers.base import (
    RoutingProvider,
    PARSE_ERRORS,
    ProviderError,
    ProviderAuthError,
    RouteNotFoundError,
    MalformedResponseError,
)
from school_proximity.providers.utils import http_get_json

MODE_PARAMS = {
    TravelMode.WALKING: "walking",
    TravelMode.DRIVING: "driving",
    TravelMode.CYCLING: "bicycling",
}

AUTH_STATUSES = ("REQUEST_DENIED",)
NO_ROUTE_STATUSES = ("ZERO_RESULTS", "NOT_FOUND")
_TAG_RE = re.compile(r"<[^>]*>?")


def strip_html(text: str) -> str:
    return _TAG_RE.sub("", text or "")


def _parse_leg(routes: list, candidate_id: str) -> RouteLeg:
    if not routes:
        raise MalformedResponseError("Directions answered OK without routes")
    route = routes[0]
    legs = route.get("legs")
    if not legs:
        raise MalformedResponseError("Directions route has no legs")
    polyline = (route.get("overview_polyline") or {}).get("points")
    if not polyline:
        raise MalformedResponseError("Directions route has no overview polyline")

    leg = legs[0]
    steps = tuple(
        RouteStep(
            instruction=strip_html(step.get("html_instructions")) or "Continue",
            distance_m=float((step.get("distance") or {}).get("value") or 0.0),
            duration_sec=float((step.get("duration") or {}).get("value") or 0.0),
        )
        for step in leg.get("steps") or []
    )
    return RouteLeg(
        candidate_id=candidate_id,
        distance_km=float(leg["distance"]["value"]) / 1000.0,
        duration_sec=float(leg["duration"]["value"]),
        path_encoding=str(polyline),
        steps=steps,
    )


class DirectionsRoutingProvider(RoutingProvider):
    name = "directions"

    def __init__(self, session: aiohttp.ClientSession, url: str,
                 api_key: Optional[str] = None, timeout: float = 20.0):
        super().__init__()
        if not url:
            raise ValueError("Directions URL is required")
        self.session = session
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def route(self, origin: Location, destination: Location,
                    travel_mode: TravelMode, candidate_id: str = "") -> RouteLeg:
        params = {
            "origin": f"{origin.lat},{origin.lon}",
            "destination": f"{destination.lat},{destination.lon}",
            "mode": MODE_PARAMS[TravelMode(travel_mode)],
        }
        if self.api_key:
            params["key"] = self.api_key
        data = await http_get_json(self.session, self.url, params=params, timeout=self.timeout)
        if not isinstance(data, dict):
            raise MalformedResponseError("Directions response is not an object")

        status = data.get("status")
        if status in AUTH_STATUSES:
            raise ProviderAuthError(f"Directions request denied: {data.get('error_message', status)}")
        if status in NO_ROUTE_STATUSES:
            raise RouteNotFoundError(f"Directions found no route ({status})")
        if status != "OK":
            raise ProviderError(f"Directions error {status}: {data.get('error_message', '')}")

        try:
            return _parse_leg(data.get("routes") or [], candidate_id)
        except PARSE_ERRORS as e:
            raise MalformedResponseError(f"Directions payload is malformed: {e!r}") from e
