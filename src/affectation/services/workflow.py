"""Geocode stages and teachers in place before matching."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Sequence

from ..models.domain import (
    GeoPrecision,
    GeoProgressState,
    GeoStatus,
    GeoStatusExtended,
    ProgressPhase,
    StageGeoInfo,
    TeacherGeoInfo,
)
from .geocoding.fallback import GeocodeRequest, GeocodeResolver, ProgressCallback

logger = logging.getLogger(__name__)

MISSING_ADDRESS = "Missing address"


@dataclass(slots=True)
class GeocodeSummary:
    stages_ok: int = 0
    stages_ok_full: int = 0
    stages_ok_fallback: int = 0
    stages_error: int = 0
    teachers_ok: int = 0
    teachers_error: int = 0
    aborted: bool = False


@dataclass(slots=True)
class GeoReadiness:
    ready: bool
    stages_ready: int
    stages_total: int
    teachers_ready: int
    teachers_total: int
    missing_stages: list[StageGeoInfo] = field(default_factory=list)
    missing_teachers: list[TeacherGeoInfo] = field(default_factory=list)


async def geocode_stages_and_teachers(
    resolver: GeocodeResolver,
    stages: Sequence[StageGeoInfo],
    teachers: Sequence[TeacherGeoInfo],
    *,
    on_progress: ProgressCallback | None = None,
    abort_event: asyncio.Event | None = None,
    item_delay: float | None = None,
) -> GeocodeSummary:
    """Resolve every stage (with the fallback cascade) and teacher home (exact address only).

    Entities already located are left untouched. Geo fields are written on the
    inputs themselves.
    """

    summary = GeocodeSummary()
    stage_todo = [stage for stage in stages if stage.address and not stage.geo_status.has_point]
    teacher_todo = [teacher for teacher in teachers if teacher.home_address and not teacher.home_geo_status.has_point]
    state = GeoProgressState(phase=ProgressPhase.GEOCODING, total=len(stage_todo) + len(teacher_todo))
    if on_progress is not None:
        on_progress(state)
    logger.info(f"Geocoding {len(stage_todo)} stages and {len(teacher_todo)} teachers")

    stage_results = await resolver.geocode_batch(
        [GeocodeRequest(stage.stage_id, stage.address) for stage in stage_todo],
        on_progress=on_progress,
        abort_event=abort_event,
        item_delay=item_delay,
        progress=state,
    )
    for stage in stage_todo:
        result = stage_results.get(stage.stage_id)
        if result is None:
            continue
        stage.geo_status_extended = result.status
        stage.geo_precision = result.precision
        stage.geo_query_used = result.query_used
        if result.success and result.point is not None:
            stage.geo = result.point
            stage.geo_status = GeoStatus.OK
            stage.geo_error_message = None
            summary.stages_ok += 1
            if result.precision is GeoPrecision.FULL:
                summary.stages_ok_full += 1
            else:
                summary.stages_ok_fallback += 1
        else:
            stage.geo_status = result.geo_status
            stage.geo_error_message = result.error_message
            summary.stages_error += 1

    teacher_results = await resolver.geocode_batch(
        [GeocodeRequest(teacher.teacher_id, teacher.home_address or "") for teacher in teacher_todo],
        on_progress=on_progress,
        abort_event=abort_event,
        item_delay=item_delay,
        use_fallback=False,
        progress=state,
    )
    for teacher in teacher_todo:
        result = teacher_results.get(teacher.teacher_id)
        if result is None:
            continue
        if result.success and result.point is not None:
            teacher.home_geo = result.point
            teacher.home_geo_status = GeoStatus.OK
            teacher.home_geo_error_message = None
            summary.teachers_ok += 1
        else:
            teacher.home_geo_status = result.geo_status
            teacher.home_geo_error_message = result.error_message
            summary.teachers_error += 1

    processed_stages = {id(stage) for stage in stage_todo}
    processed_teachers = {id(teacher) for teacher in teacher_todo}
    for stage in stages:
        if not stage.address:
            stage.geo_status = GeoStatus.ERROR
            stage.geo_status_extended = GeoStatusExtended.ERROR
            stage.geo_precision = GeoPrecision.NONE
            stage.geo_error_message = MISSING_ADDRESS
            summary.stages_error += 1
        elif id(stage) not in processed_stages and stage.geo_status.has_point:
            summary.stages_ok += 1
            summary.stages_ok_full += 1
    for teacher in teachers:
        if id(teacher) not in processed_teachers and teacher.home_geo_status.has_point:
            summary.teachers_ok += 1

    summary.aborted = abort_event is not None and abort_event.is_set()
    state.finish(summary.aborted)
    if on_progress is not None:
        on_progress(state)
    logger.info(
        f"Geocoding done: stages {summary.stages_ok} ok ({summary.stages_ok_fallback} by fallback), "
        f"{summary.stages_error} errors; teachers {summary.teachers_ok} ok, {summary.teachers_error} errors"
    )
    return summary


def check_geo_readiness(stages: Sequence[StageGeoInfo], teachers: Sequence[TeacherGeoInfo]) -> GeoReadiness:
    missing_stages = [stage for stage in stages if not stage.geo_status.has_point]
    missing_teachers = [teacher for teacher in teachers if not teacher.home_geo_status.has_point]
    return GeoReadiness(
        ready=not missing_stages and not missing_teachers,
        stages_ready=len(stages) - len(missing_stages),
        stages_total=len(stages),
        teachers_ready=len(teachers) - len(missing_teachers),
        teachers_total=len(teachers),
        missing_stages=missing_stages,
        missing_teachers=missing_teachers,
    )
