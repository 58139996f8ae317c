"""End-to-end stage matching: geocode, route, solve."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from ...models.domain import (
    ExclusionKind,
    GeoPoint,
    GeoStatus,
    StageExclusion,
    StageGeoInfo,
    TeacherGeoInfo,
)
from ..geocoding.fallback import GeocodeResolver, ProgressCallback
from ..routing.service import RouteBatchResult, RouteResolver
from ..workflow import GeocodeSummary, geocode_stages_and_teachers
from .models import MatchingOptions, MatchingResult
from .solver import solve_stage_matching

logger = logging.getLogger(__name__)

DEFAULT_TEACHER_CAPACITY = 10


@dataclass(slots=True)
class StageMatchingRun:
    result: MatchingResult
    geocoding: GeocodeSummary
    routing: RouteBatchResult


async def run_stage_matching(
    stages: Sequence[StageGeoInfo],
    teachers: Sequence[TeacherGeoInfo],
    *,
    geocode_resolver: GeocodeResolver,
    route_resolver: RouteResolver,
    options: MatchingOptions | None = None,
    on_progress: ProgressCallback | None = None,
    abort_event: asyncio.Event | None = None,
    item_delay: float | None = None,
) -> StageMatchingRun:
    """Geocode missing coordinates, compute pruned route pairs, then solve.

    ``ConfigurationError`` from a backend propagates; every other failure ends
    up as unassigned stages or estimated routes.
    """

    options = options or MatchingOptions()
    logger.info(f"Stage matching run: {len(stages)} stages, {len(teachers)} teachers")
    geocoding = await geocode_stages_and_teachers(
        geocode_resolver,
        stages,
        teachers,
        on_progress=on_progress,
        abort_event=abort_event,
        item_delay=item_delay,
    )
    routing = await route_resolver.compute_route_pairs(
        stages,
        teachers,
        max_candidates=options.max_candidates_per_stage,
        max_distance_km=options.pruning_radius_km,
        on_progress=on_progress,
        abort_event=abort_event,
        item_delay=item_delay,
    )
    result = solve_stage_matching(stages, teachers, routing.pairs, options)
    return StageMatchingRun(result=result, geocoding=geocoding, routing=routing)


def _point(record: Mapping[str, Any]) -> Optional[GeoPoint]:
    lat, lon = record.get("lat"), record.get("lon")
    if lat is None or lon is None:
        return None
    return GeoPoint(float(lat), float(lon))


def _geo_status(record: Mapping[str, Any], point: Optional[GeoPoint]) -> GeoStatus:
    """Records carrying coordinates without a status count as located."""
    if record.get("geo_status") is None and point is not None:
        return GeoStatus.OK
    return GeoStatus.coerce(record.get("geo_status"))


def to_stage_geo_info(record: Mapping[str, Any]) -> StageGeoInfo:
    """Build a ``StageGeoInfo`` from a loosely typed record."""
    point = _point(record)
    return StageGeoInfo(
        stage_id=str(record["id"]),
        student_id=str(record.get("student_id") or ""),
        address=record.get("address") or "",
        student_class=record.get("student_class"),
        student_options=list(record.get("student_options") or []),
        geo=point,
        geo_status=_geo_status(record, point),
        geo_error_message=record.get("geo_error_message"),
        company_name=record.get("company_name"),
        tutor=record.get("tutor"),
        start_date=record.get("start_date"),
        end_date=record.get("end_date"),
    )


def to_teacher_geo_info(record: Mapping[str, Any]) -> TeacherGeoInfo:
    """Build a ``TeacherGeoInfo``; a missing capacity defaults to 10, unknown exclusion kinds to class."""
    capacity = record.get("capacity")
    point = _point(record)
    return TeacherGeoInfo(
        teacher_id=str(record["id"]),
        last_name=record.get("last_name") or "",
        first_name=record.get("first_name") or "",
        capacity_max=int(capacity) if capacity is not None else DEFAULT_TEACHER_CAPACITY,
        subject=record.get("subject"),
        home_address=record.get("address"),
        home_geo=point,
        home_geo_status=_geo_status(record, point),
        home_geo_error_message=record.get("geo_error_message"),
        classes=list(record.get("classes") or []),
        exclusions=[
            StageExclusion(
                kind=ExclusionKind.coerce(item.get("kind") or item.get("type") or ""),
                value=str(item.get("value", "")),
                reason=item.get("reason"),
            )
            for item in record.get("exclusions") or []
        ],
    )
