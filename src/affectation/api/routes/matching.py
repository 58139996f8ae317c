"""Stage matching endpoints."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Sequence

from fastapi import APIRouter, Depends, HTTPException, status

from ...errors import ConfigurationError
from ...models.domain import GeoPoint, StageGeoInfo, TeacherStagePair
from ...schemas.matching import (
    AssignmentModel,
    MatchingOptionsModel,
    MatchingStatsModel,
    RunRequest,
    RunResponse,
    SolveRequest,
    SolveResponse,
    UnassignedModel,
)
from ...services.geocoding.fallback import GeocodeResolver
from ...services.matching.models import MatchingOptions, MatchingResult
from ...services.matching.service import run_stage_matching, to_stage_geo_info, to_teacher_geo_info
from ...services.matching.solver import solve_stage_matching
from ...services.routing.service import RouteResolver
from ..dependencies import get_geocode_resolver, get_route_resolver

router = APIRouter(prefix="/matching", tags=["matching"])


def _options(payload: MatchingOptionsModel | None) -> MatchingOptions:
    if payload is None:
        return MatchingOptions.from_settings()
    overrides = payload.model_dump(exclude_none=True, exclude={"anchor"})
    if payload.anchor is not None:
        overrides["anchor"] = GeoPoint(payload.anchor.lat, payload.anchor.lon)
    return MatchingOptions.from_settings(**overrides)


def _solve_response(result: MatchingResult, stages: Sequence[StageGeoInfo]) -> dict:
    stage_by_id = {stage.stage_id: stage for stage in stages}
    assignments = []
    for assignment in result.assignments:
        point = stage_by_id[assignment.stage_id].geo
        assignments.append(
            AssignmentModel(
                stage_id=assignment.stage_id,
                student_id=assignment.student_id,
                teacher_id=assignment.teacher_id,
                distance_km=round(assignment.distance_km, 2),
                duration_min=round(assignment.duration_min, 1),
                score=round(assignment.score, 2),
                phase=int(assignment.phase),
                explanation=assignment.explanation,
                estimated=assignment.estimated,
                lat=point.lat if point else None,
                lon=point.lon if point else None,
            )
        )
    return {
        "assignments": assignments,
        "unassigned": [UnassignedModel(**asdict(item)) for item in result.unassigned],
        "stats": MatchingStatsModel(**asdict(result.stats)),
        "elapsed_ms": round(result.elapsed_ms, 1),
    }


@router.post("/solve", response_model=SolveResponse, status_code=status.HTTP_200_OK)
def solve(payload: SolveRequest) -> SolveResponse:
    """Solve from caller-supplied coordinates and route pairs, without any network call."""
    try:
        stages = [to_stage_geo_info(item.model_dump()) for item in payload.stages]
        teachers = [to_teacher_geo_info(item.model_dump()) for item in payload.teachers]
        pairs = [TeacherStagePair(**item.model_dump()) for item in payload.pairs]
        result = solve_stage_matching(stages, teachers, pairs, _options(payload.options))
        return SolveResponse(**_solve_response(result, stages))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error solving stage matching: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to solve stage matching: {str(exc)}",
        ) from exc


@router.post("/run", response_model=RunResponse, status_code=status.HTTP_200_OK)
async def run(
    payload: RunRequest,
    geocode_resolver: GeocodeResolver = Depends(get_geocode_resolver),
    route_resolver: RouteResolver = Depends(get_route_resolver),
) -> RunResponse:
    """Geocode, route and solve in one call."""
    try:
        stages = [to_stage_geo_info(item.model_dump()) for item in payload.stages]
        teachers = [to_teacher_geo_info(item.model_dump()) for item in payload.teachers]
        outcome = await run_stage_matching(
            stages,
            teachers,
            geocode_resolver=geocode_resolver,
            route_resolver=route_resolver,
            options=_options(payload.options),
        )
    except ConfigurationError:
        raise
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except Exception as exc:
        logging.exception(f"Error running stage matching: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to run stage matching: {str(exc)}",
        ) from exc

    routing = asdict(outcome.routing)
    routing.pop("pairs")
    return RunResponse(
        **_solve_response(outcome.result, stages),
        geocoding=asdict(outcome.geocoding),
        routing=routing,
    )
