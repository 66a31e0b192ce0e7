"""
Typed entities that flow through the proximity pipeline.

Provider payloads are converted into these at the provider boundary and
results are converted back to plain dicts only at the persistence/API
boundary (``ProximityResult.to_document``).
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
import math


class TravelMode(str, Enum):
    WALKING = "walking"
    DRIVING = "driving"
    CYCLING = "cycling"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OriginOutcome(str, Enum):
    RESOLVED = "resolved"
    NO_RESULT = "no_result"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Location:
    lat: float
    lon: float

    def is_valid(self) -> bool:
        """Finite and within WGS84 bounds."""
        return (
            math.isfinite(self.lat) and math.isfinite(self.lon)
            and -90.0 <= self.lat <= 90.0
            and -180.0 <= self.lon <= 180.0
        )

    def as_lonlat(self) -> Tuple[float, float]:
        return (self.lon, self.lat)


def parse_location(value: Any) -> Optional[Location]:
    """Parse a ``[lon, lat]`` pair or a ``{lat, lon|lng}`` mapping.

    Returns None for anything missing, non-numeric or out of range.
    """
    if value is None:
        return None
    try:
        if isinstance(value, Mapping):
            lat = value.get("lat")
            lon = value.get("lon", value.get("lng"))
            if lat is None or lon is None:
                return None
            loc = Location(float(lat), float(lon))
        elif isinstance(value, (list, tuple)) and len(value) == 2:
            # directory geometry order is lon, lat
            if value[0] is None or value[1] is None:
                return None
            loc = Location(float(value[1]), float(value[0]))
        else:
            return None
    except (TypeError, ValueError):
        return None
    return loc if loc.is_valid() else None


@dataclass(frozen=True)
class Category:
    key: str
    label: str
    # Overpass filter, e.g. "amenity=marketplace"; None when the backend has no tag for it
    tag: Optional[str] = None


DEFAULT_DESTINATION_KEY = "destination"


def destination_category(key: str = "") -> Category:
    """Label for a run over caller-supplied destinations; never searchable."""
    key = key or DEFAULT_DESTINATION_KEY
    return Category(key, key.replace("_", " ").title())


@dataclass(frozen=True)
class OriginEntity:
    id: str
    display_name: str
    location: Optional[Location] = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "OriginEntity":
        """Build an origin from a directory record.

        Accepts ``geometry.coordinates`` (lon, lat), ``coordinates`` or
        ``location``. A malformed location is kept as None so the origin can
        be reported as invalid instead of raising.
        """
        raw = None
        geometry = record.get("geometry")
        if isinstance(geometry, Mapping):
            raw = geometry.get("coordinates")
        if raw is None:
            raw = record.get("coordinates", record.get("location"))
        name = record.get("displayName") or record.get("display_name") or record.get("name") or ""
        return cls(
            id=str(record.get("id", "")),
            display_name=str(name),
            location=parse_location(raw),
        )


@dataclass(frozen=True)
class AmenityCandidate:
    id: str
    name: str
    location: Optional[Location]
    category: str

    @classmethod
    def from_record(cls, record: Mapping[str, Any], category: str) -> "AmenityCandidate":
        """Build a fixed destination from a caller-supplied record.

        Uses the same location and name fields as origins; an unusable
        location is kept as None and the candidate is never routed.
        """
        origin = OriginEntity.from_record(record)
        return cls(
            id=origin.id,
            name=origin.display_name or f"Destination {origin.id}",
            location=origin.location,
            category=category,
        )


@dataclass(frozen=True)
class RouteStep:
    instruction: str
    distance_m: float
    duration_sec: float


@dataclass(frozen=True)
class RouteLeg:
    candidate_id: str
    distance_km: float
    duration_sec: float
    path_encoding: Optional[str] = None
    steps: Tuple[RouteStep, ...] = ()


def format_duration(seconds: float) -> str:
    """Human travel time: ``"1h 5m"``, ``"2h"`` or ``"12 mins"``."""
    total_minutes = int(math.floor(seconds / 60.0 + 0.5))
    if total_minutes >= 60:
        hours, minutes = divmod(total_minutes, 60)
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    return f"{total_minutes} mins"


@dataclass(frozen=True)
class ProximityResult:
    origin_id: str
    origin_name: str
    candidate_id: str
    candidate_name: str
    distance_km: float
    duration_sec: float
    travel_mode: TravelMode
    path_encoding: Optional[str] = None
    category: Optional[str] = None
    origin_location: Optional[Location] = None
    candidate_location: Optional[Location] = None
    steps: Tuple[RouteStep, ...] = ()

    @property
    def duration_text(self) -> str:
        return format_duration(self.duration_sec)

    def to_document(self) -> Dict[str, Any]:
        """Normalized document for the persistence collaborator and the API."""
        def _point(loc: Optional[Location]) -> Optional[Dict[str, float]]:
            return {"lat": loc.lat, "lng": loc.lon} if loc else None

        return {
            "originId": self.origin_id,
            "originName": self.origin_name,
            "placeId": self.candidate_id,
            "place": self.candidate_name,
            "amenityType": self.category,
            "distance": round(self.distance_km, 3),
            "duration": self.duration_sec,
            "time": self.duration_text,
            "travelMode": TravelMode(self.travel_mode).value,
            "originCoords": _point(self.origin_location),
            "location": _point(self.candidate_location),
            "overviewPolyline": self.path_encoding or "",
        }


@dataclass
class BatchRun:
    processed: int = 0
    total: int = 0
    current_batch_size: int = 0
    cancelled: bool = False


@dataclass(frozen=True)
class Progress:
    processed: int
    total: int


@dataclass
class RunReport:
    state: RunState
    results: List[ProximityResult] = field(default_factory=list)
    invalid: List[OriginEntity] = field(default_factory=list)
    no_results: List[OriginEntity] = field(default_factory=list)
    error: Optional[BaseException] = None
    batches: int = 0
    elapsed: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "success_count": len(self.results),
            "invalid_count": len(self.invalid),
            "no_result_count": len(self.no_results),
            "batches": self.batches,
            "elapsed_sec": round(self.elapsed, 3),
            "error": str(self.error) if self.error else None,
        }
