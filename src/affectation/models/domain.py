"""Domain models for placements, teachers, geocoding and routing records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GeoStatus(str, Enum):
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"
    MANUAL = "manual"
    NOT_FOUND = "not_found"

    @property
    def has_point(self) -> bool:
        return self in (GeoStatus.OK, GeoStatus.MANUAL)

    @classmethod
    def coerce(cls, value: "str | GeoStatus | None") -> "GeoStatus":
        """Unknown or missing values map to PENDING."""
        if isinstance(value, GeoStatus):
            return value
        try:
            return cls(value or "")
        except ValueError:
            return cls.PENDING


class GeoConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNKNOWN = "unknown"


class GeoPrecision(str, Enum):
    """How far an address had to be relaxed to obtain a coordinate."""

    FULL = "FULL"
    CITY = "CITY"
    TOWNHALL = "TOWNHALL"
    NONE = "NONE"

    @property
    def rank(self) -> int:
        return _PRECISION_RANK[self]


_PRECISION_RANK = {
    GeoPrecision.FULL: 3,
    GeoPrecision.CITY: 2,
    GeoPrecision.TOWNHALL: 1,
    GeoPrecision.NONE: 0,
}


class GeoStatusExtended(str, Enum):
    PENDING = "PENDING"
    OK_FULL = "OK_FULL"
    OK_CITY_FALLBACK = "OK_CITY_FALLBACK"
    OK_TOWNHALL_FALLBACK = "OK_TOWNHALL_FALLBACK"
    ERROR = "ERROR"

    @classmethod
    def from_precision(cls, precision: GeoPrecision) -> "GeoStatusExtended":
        return {
            GeoPrecision.FULL: cls.OK_FULL,
            GeoPrecision.CITY: cls.OK_CITY_FALLBACK,
            GeoPrecision.TOWNHALL: cls.OK_TOWNHALL_FALLBACK,
        }.get(precision, cls.ERROR)

    def to_geo_status(self) -> GeoStatus:
        if self in (
            GeoStatusExtended.OK_FULL,
            GeoStatusExtended.OK_CITY_FALLBACK,
            GeoStatusExtended.OK_TOWNHALL_FALLBACK,
        ):
            return GeoStatus.OK
        if self is GeoStatusExtended.PENDING:
            return GeoStatus.PENDING
        return GeoStatus.ERROR


class ExclusionKind(str, Enum):
    CLASS = "classe"
    ZONE = "zone"
    STUDENT = "eleve"
    SECTOR = "secteur"

    @classmethod
    def coerce(cls, value: "str | ExclusionKind") -> "ExclusionKind":
        """Unknown kinds fall back to CLASS, matching the data entry side."""
        if isinstance(value, ExclusionKind):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.CLASS


@dataclass(slots=True, frozen=True)
class GeoPoint:
    lat: float
    lon: float


@dataclass(slots=True)
class StageExclusion:
    kind: ExclusionKind
    value: str
    reason: Optional[str] = None


@dataclass(slots=True)
class StageGeoInfo:
    """A work placement waiting for a supervising teacher.

    Geo fields are filled in place by the geocoding workflow.
    """

    stage_id: str
    student_id: str
    address: str
    student_class: Optional[str] = None
    student_options: list[str] = field(default_factory=list)
    geo: Optional[GeoPoint] = None
    geo_status: GeoStatus = GeoStatus.PENDING
    geo_error_message: Optional[str] = None
    geo_status_extended: Optional[GeoStatusExtended] = None
    geo_precision: Optional[GeoPrecision] = None
    geo_query_used: Optional[str] = None
    company_name: Optional[str] = None
    tutor: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(slots=True)
class TeacherGeoInfo:
    """A candidate supervisor. Read-only to the solver."""

    teacher_id: str
    last_name: str
    first_name: str
    capacity_max: int
    subject: Optional[str] = None
    home_address: Optional[str] = None
    home_geo: Optional[GeoPoint] = None
    home_geo_status: GeoStatus = GeoStatus.PENDING
    home_geo_error_message: Optional[str] = None
    classes: list[str] = field(default_factory=list)
    exclusions: list[StageExclusion] = field(default_factory=list)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass(slots=True, frozen=True)
class TeacherStagePair:
    teacher_id: str
    stage_id: str
    distance_km: float
    duration_min: float
    is_valid: bool = True
    estimated: bool = False


@dataclass(slots=True)
class GeocodeCacheEntry:
    address_hash: str
    original_address: str
    normalized_address: str
    lat: float
    lon: float
    provider: str
    confidence: GeoConfidence
    status: GeoStatus
    precision: Optional[GeoPrecision] = None
    query_used: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lon)


@dataclass(slots=True, frozen=True)
class RouteCacheEntry:
    route_key_hash: str
    from_lat: float
    from_lon: float
    to_lat: float
    to_lon: float
    distance_km: float
    duration_min: float
    provider: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True, frozen=True)
class RouteMetrics:
    distance_km: float
    duration_min: float
    provider: str


class ProgressPhase(str, Enum):
    IDLE = "idle"
    GEOCODING = "geocoding"
    ROUTING = "routing"
    DONE = "done"


@dataclass(slots=True)
class ProgressError:
    item: str
    message: str


@dataclass(slots=True)
class GeoProgressState:
    """Snapshot handed to progress callbacks during geocoding and routing batches."""

    phase: ProgressPhase
    total: int
    current: int = 0
    current_item: Optional[str] = None
    errors: list[ProgressError] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def advance(self, item: str) -> None:
        self.current += 1
        self.current_item = item

    def fail(self, item: str, message: str) -> None:
        self.errors.append(ProgressError(item, message))

    def finish(self, aborted: bool = False) -> None:
        self.phase = ProgressPhase.IDLE if aborted else ProgressPhase.DONE
        self.completed_at = utcnow()
