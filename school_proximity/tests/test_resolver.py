import asyncio

import pytest

from school_proximity import metrics
from school_proximity.models import AmenityCandidate, Location, OriginEntity, RouteLeg, TravelMode
from school_proximity.providers.base import ProviderAuthError, ProviderError, RoutingProvider
from school_proximity.providers.osrm_provider import OSRMRoutingProvider, format_coordinates
from school_proximity.services.resolver import RouteDistanceResolver, select_nearest

ORIGIN = OriginEntity("s1", "Kibera Primary", Location(-1.31, 36.78))


def _candidates(n):
    return [
        AmenityCandidate(id=f"m{i}", name=f"Market {i}", location=Location(-1.30 + i * 0.01, 36.78), category="market")
        for i in range(n)
    ]


class FakeProvider(RoutingProvider):
    """Answers from a candidate_id -> distance_km (or exception) table."""

    name = "fake"

    def __init__(self, answers, delay=0.0):
        super().__init__()
        self.answers = answers
        self.delay = delay
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def route(self, origin, destination, travel_mode, candidate_id=""):
        self.calls.append(candidate_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            answer = self.answers[candidate_id]
            delay = answer[1] if isinstance(answer, tuple) else self.delay
            if delay:
                await asyncio.sleep(delay)
            if isinstance(answer, tuple):
                answer = answer[0]
            if isinstance(answer, BaseException):
                raise answer
            return RouteLeg(candidate_id, answer, answer * 600, path_encoding=f"poly-{candidate_id}")
        finally:
            self.in_flight -= 1


class FakeTableProvider(FakeProvider):
    supports_table = True

    def __init__(self, distances):
        super().__init__({})
        self.distances = distances
        self.table_calls = 0

    async def table(self, origin, destinations, travel_mode):
        self.table_calls += 1
        if isinstance(self.distances, BaseException):
            raise self.distances
        return [None if d is None else RouteLeg("", d, d * 600) for d in self.distances]


def test_select_nearest_first_minimum_wins():
    legs = [RouteLeg(str(i), d, 0) for i, d in enumerate([5.2, 3.1, 3.1, 8.0])]
    assert select_nearest(legs) == 1


def test_select_nearest_skips_missing():
    assert select_nearest([None, RouteLeg("a", 2.0, 0), None]) == 1
    assert select_nearest([None, None]) is None
    assert select_nearest([]) is None


@pytest.mark.asyncio
async def test_resolve_picks_shortest_distance():
    provider = FakeProvider({"m0": 5.2, "m1": 3.1, "m2": 3.1, "m3": 8.0})
    resolver = RouteDistanceResolver(provider)

    result = await resolver.resolve(ORIGIN, _candidates(4), TravelMode.WALKING, category="market")

    assert result.candidate_id == "m1"
    assert result.candidate_name == "Market 1"
    assert result.distance_km == 3.1
    assert result.origin_id == "s1"
    assert result.path_encoding == "poly-m1"
    assert result.category == "market"
    assert result.travel_mode is TravelMode.WALKING


@pytest.mark.asyncio
async def test_single_failure_shrinks_candidate_set():
    provider = FakeProvider({"m0": ProviderError("boom"), "m1": 4.0, "m2": 2.5, "m3": 9.0})
    result = await RouteDistanceResolver(provider).resolve(ORIGIN, _candidates(4), TravelMode.DRIVING)

    assert result.candidate_id == "m2"
    assert metrics.get_metrics()["counters"]["routing.failure"] == 1


@pytest.mark.asyncio
async def test_all_failures_resolve_to_none():
    provider = FakeProvider({"m0": ProviderError("a"), "m1": ProviderError("b")})
    result = await RouteDistanceResolver(provider).resolve(ORIGIN, _candidates(2), TravelMode.WALKING)

    assert result is None
    assert metrics.get_metrics()["counters"]["routing.no_reachable"] == 1


@pytest.mark.asyncio
async def test_auth_error_propagates_after_fan_out():
    provider = FakeProvider({"m0": 1.0, "m1": ProviderAuthError("denied"), "m2": 2.0})
    with pytest.raises(ProviderAuthError):
        await RouteDistanceResolver(provider).resolve(ORIGIN, _candidates(3), TravelMode.WALKING)
    assert sorted(provider.calls) == ["m0", "m1", "m2"]


@pytest.mark.asyncio
async def test_slow_candidate_times_out_and_is_skipped():
    provider = FakeProvider({"m0": (1.0, 1.0), "m1": 3.0})
    resolver = RouteDistanceResolver(provider, timeout=0.05)

    result = await resolver.resolve(ORIGIN, _candidates(2), TravelMode.WALKING)
    assert result.candidate_id == "m1"


@pytest.mark.asyncio
async def test_concurrency_bound_is_respected():
    provider = FakeProvider({f"m{i}": float(i + 1) for i in range(8)}, delay=0.01)
    resolver = RouteDistanceResolver(provider, concurrency=3)

    result = await resolver.resolve(ORIGIN, _candidates(8), TravelMode.WALKING)

    assert result.candidate_id == "m0"
    assert provider.max_in_flight == 3


@pytest.mark.asyncio
async def test_shared_limiter_bounds_concurrent_resolves():
    provider = FakeProvider({f"m{i}": 1.0 for i in range(4)}, delay=0.01)
    limiter = asyncio.Semaphore(2)
    resolver = RouteDistanceResolver(provider, concurrency=3, limiter=limiter)

    await asyncio.gather(
        resolver.resolve(ORIGIN, _candidates(4), TravelMode.WALKING),
        resolver.resolve(ORIGIN, _candidates(4), TravelMode.WALKING),
    )
    assert provider.max_in_flight <= 2


@pytest.mark.asyncio
async def test_invalid_candidates_are_never_routed():
    candidates = _candidates(2) + [
        AmenityCandidate(id="bad", name="Nowhere", location=Location(123.0, 36.0), category="market"),
    ]
    provider = FakeProvider({"m0": 2.0, "m1": 1.0})

    result = await RouteDistanceResolver(provider).resolve(ORIGIN, candidates, TravelMode.WALKING)

    assert result.candidate_id == "m1"
    assert "bad" not in provider.calls


@pytest.mark.asyncio
async def test_origin_without_location_resolves_to_none():
    provider = FakeProvider({"m0": 1.0})
    origin = OriginEntity("s2", "No Coordinates School")

    assert await RouteDistanceResolver(provider).resolve(origin, _candidates(1), TravelMode.WALKING) is None
    assert provider.calls == []


@pytest.mark.asyncio
async def test_unexpected_errors_are_not_swallowed():
    provider = FakeProvider({"m0": RuntimeError("bug")})
    with pytest.raises(RuntimeError):
        await RouteDistanceResolver(provider).resolve(ORIGIN, _candidates(1), TravelMode.WALKING)


@pytest.mark.asyncio
async def test_table_mode_uses_single_request():
    provider = FakeTableProvider([4.0, None, 1.5])
    resolver = RouteDistanceResolver(provider, use_table=True)

    result = await resolver.resolve(ORIGIN, _candidates(3), TravelMode.WALKING)

    assert provider.table_calls == 1
    assert provider.calls == []
    assert result.candidate_id == "m2"
    assert result.distance_km == 1.5
    assert result.path_encoding is None


@pytest.mark.asyncio
async def test_table_failure_resolves_to_none():
    provider = FakeTableProvider(ProviderError("table down"))
    resolver = RouteDistanceResolver(provider, use_table=True)
    assert await resolver.resolve(ORIGIN, _candidates(2), TravelMode.WALKING) is None


@pytest.mark.asyncio
async def test_table_auth_error_propagates():
    provider = FakeTableProvider(ProviderAuthError("denied"))
    with pytest.raises(ProviderAuthError):
        await RouteDistanceResolver(provider, use_table=True).resolve(ORIGIN, _candidates(2), TravelMode.WALKING)


def test_table_mode_ignored_for_providers_without_table():
    resolver = RouteDistanceResolver(FakeProvider({}), use_table=True)
    assert resolver.use_table is False


class RouteSession:
    """aiohttp stand-in answering OSRM /route calls by destination coordinates."""

    class Resp:
        status = 200

        def __init__(self, payload):
            self._payload = payload

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def json(self, content_type=None):
            return self._payload

    def __init__(self, payloads):
        self.payloads = payloads

    def get(self, url, params=None, headers=None, timeout=None):
        for suffix, payload in self.payloads.items():
            if url.endswith(suffix):
                return RouteSession.Resp(payload)
        raise AssertionError(f"unexpected url {url}")


def _osrm_payload(distance, step_distance=10.0):
    return {"code": "Ok", "routes": [{
        "distance": distance, "duration": 600.0, "geometry": "abc",
        "legs": [{"steps": [{"maneuver": {"type": "depart"}, "distance": step_distance, "duration": 5}]}],
    }]}


@pytest.mark.asyncio
async def test_malformed_route_payload_only_drops_that_candidate():
    candidates = _candidates(3)
    coords = [format_coordinates([ORIGIN.location, c.location]) for c in candidates]
    session = RouteSession({
        coords[0]: _osrm_payload(500.0, step_distance="n/a"),
        coords[1]: _osrm_payload(2000.0),
        coords[2]: {"code": "Ok", "routes": ["not-a-route"]},
    })
    resolver = RouteDistanceResolver(OSRMRoutingProvider(session, "http://osrm.local"), concurrency=1)

    result = await resolver.resolve(ORIGIN, candidates, TravelMode.WALKING)

    assert result.candidate_id == "m1"
    assert result.distance_km == 2.0
    assert metrics.get_metrics()["counters"]["routing.failure"] == 2
