"""Cached route resolution and candidate pair computation for the matching solver."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import httpx

from ...config import Settings, settings
from ...models.domain import (
    GeoPoint,
    GeoProgressState,
    ProgressPhase,
    RouteMetrics,
    StageGeoInfo,
    TeacherGeoInfo,
    TeacherStagePair,
)
from ...persistence.cache import GeoCacheRepository, create_cache_store
from ..geospatial import nearest_within
from .providers import RouteProvider, RouteResult, create_route_provider, estimate_metrics

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GeoProgressState], None]


@dataclass(slots=True)
class RouteBatchResult:
    total: int = 0
    success: int = 0
    errors: int = 0
    cached: int = 0
    estimated: int = 0
    aborted: bool = False
    pairs: list[TeacherStagePair] = field(default_factory=list)


@dataclass(slots=True)
class _PairJob:
    stage: StageGeoInfo
    teacher: TeacherGeoInfo
    crow_distance_km: float

    @property
    def label(self) -> str:
        return f"{self.teacher.teacher_id} -> {self.stage.stage_id}"


def _stage_point(stage: StageGeoInfo) -> Optional[GeoPoint]:
    return stage.geo if stage.geo is not None and stage.geo_status.has_point else None


def _teacher_point(teacher: TeacherGeoInfo) -> Optional[GeoPoint]:
    return teacher.home_geo if teacher.home_geo is not None and teacher.home_geo_status.has_point else None


class RouteResolver:
    """Resolve teacher-to-stage routes through one provider and the shared route cache."""

    def __init__(
        self,
        provider: RouteProvider,
        cache: GeoCacheRepository | None = None,
        *,
        road_factor: float | None = None,
        average_speed_kmh: float | None = None,
    ) -> None:
        self.provider = provider
        self.cache = cache or GeoCacheRepository()
        self.road_factor = road_factor if road_factor is not None else settings.road_factor
        self.average_speed_kmh = average_speed_kmh if average_speed_kmh is not None else settings.average_speed_kmh

    def estimate(self, origin: GeoPoint, destination: GeoPoint) -> RouteMetrics:
        return estimate_metrics(
            origin,
            destination,
            road_factor=self.road_factor,
            average_speed_kmh=self.average_speed_kmh,
        )

    async def get_route_metrics(self, origin: GeoPoint, destination: GeoPoint) -> RouteResult:
        """Cache first; a provider answer is cached only when it succeeds."""

        cached = self.cache.get_route(origin, destination, self.provider.name)
        if cached is not None:
            return RouteResult(
                success=True,
                provider=cached.provider,
                metrics=RouteMetrics(cached.distance_km, cached.duration_min, cached.provider),
                from_cache=True,
            )
        result = await self.provider.get_route(origin, destination)
        if result.success and result.metrics is not None:
            self.cache.put_route(
                origin,
                destination,
                distance_km=result.metrics.distance_km,
                duration_min=result.metrics.duration_min,
                provider=self.provider.name,
            )
        return result

    def candidate_jobs(
        self,
        stages: Sequence[StageGeoInfo],
        teachers: Sequence[TeacherGeoInfo],
        *,
        max_candidates: int,
        max_distance_km: float,
    ) -> list[_PairJob]:
        """The K nearest teachers within the radius for every located stage."""

        located = [teacher for teacher in teachers if _teacher_point(teacher) is not None]
        jobs: list[_PairJob] = []
        for stage in stages:
            point = _stage_point(stage)
            if point is None:
                continue
            nearest = nearest_within(
                point,
                located,
                _teacher_point,
                max_distance_km=max_distance_km,
                limit=max_candidates,
            )
            jobs.extend(_PairJob(stage, teacher, distance) for teacher, distance in nearest)
        return jobs

    async def compute_route_pairs(
        self,
        stages: Sequence[StageGeoInfo],
        teachers: Sequence[TeacherGeoInfo],
        *,
        max_candidates: int | None = None,
        max_distance_km: float | None = None,
        on_progress: ProgressCallback | None = None,
        abort_event: asyncio.Event | None = None,
        item_delay: float | None = None,
    ) -> RouteBatchResult:
        """Route every pruned (teacher, stage) pair, sequentially.

        A pair whose route cannot be computed still gets a pair, carrying the
        degraded estimate and ``estimated=True``.
        """

        jobs = self.candidate_jobs(
            stages,
            teachers,
            max_candidates=max_candidates if max_candidates is not None else settings.max_candidates_per_stage,
            max_distance_km=max_distance_km if max_distance_km is not None else settings.pruning_radius_km,
        )
        delay = item_delay if item_delay is not None else settings.route_item_delay_seconds
        result = RouteBatchResult(total=len(jobs))
        state = GeoProgressState(phase=ProgressPhase.ROUTING, total=len(jobs))
        if on_progress is not None:
            on_progress(state)
        logger.info(f"Computing {len(jobs)} routes for {len(stages)} stages and {len(teachers)} teachers")

        for index, job in enumerate(jobs):
            if abort_event is not None and abort_event.is_set():
                logger.info(f"Route computation aborted after {index}/{len(jobs)} pairs")
                result.aborted = True
                break
            state.advance(job.label)
            if on_progress is not None:
                on_progress(state)

            origin = _teacher_point(job.teacher)
            destination = _stage_point(job.stage)
            if origin is None or destination is None:
                continue
            route = await self.get_route_metrics(origin, destination)
            if route.success and route.metrics is not None:
                result.success += 1
                if route.from_cache:
                    result.cached += 1
                result.pairs.append(
                    TeacherStagePair(
                        teacher_id=job.teacher.teacher_id,
                        stage_id=job.stage.stage_id,
                        distance_km=route.metrics.distance_km,
                        duration_min=route.metrics.duration_min,
                    )
                )
            else:
                result.errors += 1
                result.estimated += 1
                message = route.error_message or "Route computation failed"
                state.fail(job.label, message)
                logger.warning(f"Route {job.label} failed ({message}), using estimate")
                metrics = self.estimate(origin, destination)
                result.pairs.append(
                    TeacherStagePair(
                        teacher_id=job.teacher.teacher_id,
                        stage_id=job.stage.stage_id,
                        distance_km=metrics.distance_km,
                        duration_min=metrics.duration_min,
                        estimated=True,
                    )
                )
            if index < len(jobs) - 1 and not route.from_cache and delay > 0:
                await asyncio.sleep(delay)

        state.finish(result.aborted)
        if on_progress is not None:
            on_progress(state)
        logger.info(
            f"Routes done: {result.success}/{result.total} computed, {result.cached} cached, {result.estimated} estimated"
        )
        return result


def build_route_resolver(
    config: Settings | None = None,
    *,
    cache: GeoCacheRepository | None = None,
    client: httpx.AsyncClient | None = None,
) -> RouteResolver:
    config = config or settings
    return RouteResolver(
        create_route_provider(config, client=client),
        cache or GeoCacheRepository(create_cache_store(config.cache_file)),
        road_factor=config.road_factor,
        average_speed_kmh=config.average_speed_kmh,
    )
