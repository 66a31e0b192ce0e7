import json

import pytest

from school_proximity.config import BatchConfig, Config
from school_proximity.models import AmenityCandidate, Category, ProximityResult
from school_proximity.providers.base import ProviderAuthError
from school_proximity.scripts import find_nearest
from school_proximity.services.orchestrator import BatchOrchestrator

RECORDS = [
    {"id": "s1", "displayName": "Kibera Primary", "geometry": {"coordinates": [36.78, -1.31]}},
    {"id": "s2", "displayName": "Lost School"},
]


class FakeDiscovery:
    def __init__(self, categories):
        self.categories = categories

    def resolve_category(self, category):
        if isinstance(category, Category):
            return category
        return self.categories.get(category)

    async def discover(self, location, category, radius):
        return [AmenityCandidate(id="m1", name="City Market", location=location, category=category.key)]


class FakeResolver:
    def __init__(self, error=None):
        self.error = error

    async def resolve(self, origin, candidates, travel_mode, category=None):
        if self.error is not None:
            raise self.error
        return ProximityResult(origin.id, origin.display_name, "m1", "City Market", 0.5, 360.0,
                               travel_mode, category=category)


class FakeSessionManager:
    def __init__(self, config=None):
        self.config = config

    async def __aenter__(self):
        return object()

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _fake_pipeline(resolver, discovery=None):
    class FakePipeline:
        def __init__(self, session, config=None):
            self.config = config or Config()

        def new_orchestrator(self):
            return BatchOrchestrator(discovery or FakeDiscovery(self.config.categories), resolver,
                                     batch_config=BatchConfig(delay_ms=0))

        def result_store(self):
            return None

    return FakePipeline


@pytest.fixture
def origins_file(tmp_path):
    path = tmp_path / "schools.json"
    path.write_text(json.dumps(RECORDS), encoding="utf-8")
    return path


def test_load_origins_accepts_wrapped_and_geojson(tmp_path):
    wrapped = tmp_path / "wrapped.json"
    wrapped.write_text(json.dumps({"origins": RECORDS}), encoding="utf-8")
    collection = tmp_path / "collection.json"
    collection.write_text(json.dumps({"type": "FeatureCollection", "features": RECORDS}), encoding="utf-8")

    assert [o.id for o in find_nearest.load_origins(str(wrapped))] == ["s1", "s2"]
    assert [o.id for o in find_nearest.load_origins(str(collection))] == ["s1", "s2"]


def test_load_origins_rejects_non_list(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"origins": "nope"}), encoding="utf-8")
    with pytest.raises(ValueError):
        find_nearest.load_origins(str(path))


@pytest.mark.asyncio
async def test_completed_run_writes_output(origins_file, tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(find_nearest, 'SessionManager', FakeSessionManager)
    monkeypatch.setattr(find_nearest, 'Pipeline', _fake_pipeline(FakeResolver()))
    output = tmp_path / "out.json"

    args = find_nearest.build_parser().parse_args(
        [str(origins_file), '--category', 'market', '--output', str(output)])
    code = await find_nearest.find_nearest(args)

    assert code == 0
    documents = json.loads(output.read_text(encoding="utf-8"))
    assert [d["originId"] for d in documents] == ["s1"]
    out = capsys.readouterr().out
    assert "invalid: s2 Lost School" in out
    assert '"state": "completed"' in out


@pytest.mark.asyncio
async def test_failed_run_exits_non_zero(origins_file, monkeypatch):
    monkeypatch.setattr(find_nearest, 'SessionManager', FakeSessionManager)
    monkeypatch.setattr(find_nearest, 'Pipeline', _fake_pipeline(FakeResolver(ProviderAuthError("denied"))))

    args = find_nearest.build_parser().parse_args([str(origins_file), '--category', 'market'])
    assert await find_nearest.find_nearest(args) == 1


@pytest.mark.asyncio
async def test_unknown_category_exits_early(origins_file, monkeypatch):
    monkeypatch.setattr(find_nearest, 'SessionManager', FakeSessionManager)
    args = find_nearest.build_parser().parse_args([str(origins_file), '--category', 'volcano'])
    assert await find_nearest.find_nearest(args) == 2


class NoDiscovery(FakeDiscovery):
    async def discover(self, location, category, radius):
        raise AssertionError("discovery must not run for a fixed destination set")


class NearestResolver:
    async def resolve(self, origin, candidates, travel_mode, category=None):
        best = candidates[0]
        return ProximityResult(origin.id, origin.display_name, best.id, best.name, 1.2, 900.0,
                               travel_mode, category=category)


@pytest.mark.asyncio
async def test_destinations_file_replaces_discovery(origins_file, tmp_path, monkeypatch):
    destinations = tmp_path / "destinations.json"
    destinations.write_text(json.dumps({"destinations": [
        {"id": "k1", "name": "Kenyatta High", "location": {"lat": -1.30, "lng": 36.80}},
        {"id": "k2", "name": "Unmapped High"},
    ]}), encoding="utf-8")
    monkeypatch.setattr(find_nearest, 'SessionManager', FakeSessionManager)
    monkeypatch.setattr(find_nearest, 'Pipeline', _fake_pipeline(NearestResolver(), discovery=NoDiscovery({})))
    output = tmp_path / "out.json"

    args = find_nearest.build_parser().parse_args(
        [str(origins_file), '--category', 'school', '--destinations', str(destinations), '--output', str(output)])
    assert await find_nearest.find_nearest(args) == 0

    documents = json.loads(output.read_text(encoding="utf-8"))
    assert [(d["originId"], d["placeId"], d["amenityType"]) for d in documents] == [("s1", "k1", "school")]


def test_load_destinations_needs_one_usable_location(tmp_path):
    path = tmp_path / "nowhere.json"
    path.write_text(json.dumps([{"id": "k2", "name": "Unmapped High"}]), encoding="utf-8")
    with pytest.raises(ValueError):
        find_nearest.load_destinations(str(path), "school")


@pytest.mark.asyncio
@pytest.mark.parametrize("content", [None, "{not json", json.dumps({"origins": "nope"})])
async def test_unreadable_origins_exit_with_usage_error(tmp_path, monkeypatch, capsys, content):
    monkeypatch.setattr(find_nearest, 'SessionManager', FakeSessionManager)
    path = tmp_path / "schools.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")

    args = find_nearest.build_parser().parse_args([str(path)])
    assert await find_nearest.find_nearest(args) == 2
    assert "Cannot read input" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_missing_destinations_file_exits_with_usage_error(origins_file, tmp_path):
    args = find_nearest.build_parser().parse_args(
        [str(origins_file), '--destinations', str(tmp_path / "missing.json")])
    assert await find_nearest.find_nearest(args) == 2
