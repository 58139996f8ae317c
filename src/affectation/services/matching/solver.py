"""Heuristic assignment of stages to supervising teachers.

Four phases run on one ``SolverState``:

1. greedy placement of the most constrained stages first, on real route metrics;
2. optional local search moving single stages to clearly better teachers;
3. optional cone fallback around an anchor point for stages left over;
4. balancing fallback handing any remaining located stage to the least loaded teacher.

Phases 3 and 4 ignore route metrics; their assignments carry placeholder
scores and are tagged so callers can tell them apart.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from ...errors import ConstraintViolation
from ...models.domain import StageGeoInfo, TeacherGeoInfo, TeacherStagePair
from ..geospatial import cone_angle, distance_between
from .models import (
    MatchingOptions,
    MatchingPhase,
    MatchingResult,
    MatchingStats,
    SolverState,
    StageAssignment,
    UnassignedStage,
)
from .scoring import (
    assert_eligible,
    compute_score,
    hard_constraint_reason,
    is_elective_compatible,
    is_student_in_teacher_classes,
)

logger = logging.getLogger(__name__)

CONE_PLACEHOLDER_SCORE = 50.0
BALANCING_PLACEHOLDER_SCORE = 25.0
FALLBACK_SPEED_KMH = 50.0

NO_ROUTE_REASON = "No computed route for this stage"
ALL_AT_CAPACITY_REASON = "All teachers have reached their maximum capacity"
DUPLICATE_STAGE_REASON = "Duplicate stage id, only its first occurrence is matched"


@dataclass(slots=True)
class _SolveContext:
    stages: Sequence[StageGeoInfo]
    teachers: Sequence[TeacherGeoInfo]
    options: MatchingOptions
    pairs: dict[tuple[str, str], TeacherStagePair]
    teacher_by_id: dict[str, TeacherGeoInfo]
    average_load: float
    duplicates: list[StageGeoInfo] = field(default_factory=list)
    anchor_metrics: dict[str, tuple[float, float]] = field(default_factory=dict)

    def pair(self, stage_id: str, teacher_id: str) -> Optional[TeacherStagePair]:
        return self.pairs.get((stage_id, teacher_id))

    def candidates(self, stage: StageGeoInfo) -> list[tuple[TeacherGeoInfo, TeacherStagePair]]:
        """Teachers with a computed route to ``stage``, in input order."""
        found = []
        for teacher in self.teachers:
            pair = self.pair(stage.stage_id, teacher.teacher_id)
            if pair is not None:
                found.append((teacher, pair))
        return found

    def score(self, stage: StageGeoInfo, teacher: TeacherGeoInfo, pair: TeacherStagePair, load: int) -> float:
        return compute_score(
            pair,
            load,
            self.average_load,
            self.options,
            is_student_in_teacher_classes(stage, teacher),
        )


def _index_pairs(
    pairs: Sequence[TeacherStagePair],
    stages: Sequence[StageGeoInfo],
    teachers: Sequence[TeacherGeoInfo],
) -> dict[tuple[str, str], TeacherStagePair]:
    stage_ids = {stage.stage_id for stage in stages}
    teacher_ids = {teacher.teacher_id for teacher in teachers}
    index: dict[tuple[str, str], TeacherStagePair] = {}
    for pair in pairs:
        if not pair.is_valid or pair.stage_id not in stage_ids or pair.teacher_id not in teacher_ids:
            continue
        index.setdefault((pair.stage_id, pair.teacher_id), pair)
    return index


def _split_duplicates(stages: Sequence[StageGeoInfo]) -> tuple[list[StageGeoInfo], list[StageGeoInfo]]:
    unique: list[StageGeoInfo] = []
    duplicates: list[StageGeoInfo] = []
    seen: set[str] = set()
    for stage in stages:
        if stage.stage_id in seen:
            duplicates.append(stage)
            continue
        seen.add(stage.stage_id)
        unique.append(stage)
    return unique, duplicates


def _log(options: MatchingOptions, message: str) -> None:
    if options.verbose:
        logger.info(message)
    else:
        logger.debug(message)


def greedy_assignment(context: _SolveContext, state: SolverState) -> None:
    ordered = sorted(context.stages, key=lambda stage: len(context.candidates(stage)))
    for stage in ordered:
        best: Optional[tuple[TeacherGeoInfo, float]] = None
        for teacher, pair in context.candidates(stage):
            load = state.load(teacher.teacher_id)
            try:
                assert_eligible(teacher, stage, pair, load, context.options)
            except ConstraintViolation:
                continue
            score = context.score(stage, teacher, pair, load)
            if best is None or score < best[1]:
                best = (teacher, score)
        if best is not None:
            state.assign(stage.stage_id, best[0].teacher_id, MatchingPhase.GREEDY, best[1])
    _log(context.options, f"Greedy phase: {len(state.assignments)}/{len(context.stages)} stages assigned")


def local_search(context: _SolveContext, state: SolverState) -> int:
    """Move single stages to better teachers until a pass changes nothing. Returns the pass count."""

    options = context.options
    deadline = time.perf_counter() + options.local_search_timeout_seconds
    iterations = 0
    while iterations < options.local_search_max_iterations:
        if time.perf_counter() >= deadline:
            _log(options, f"Local search stopped on its time budget after {iterations} passes")
            break
        iterations += 1
        swaps = 0
        for stage in context.stages:
            current_id = state.assignments.get(stage.stage_id)
            if current_id is None or state.phases.get(stage.stage_id) is not MatchingPhase.GREEDY:
                continue
            current_pair = context.pair(stage.stage_id, current_id)
            if current_pair is None:
                continue
            current_teacher = context.teacher_by_id[current_id]
            current_score = context.score(stage, current_teacher, current_pair, state.load(current_id))

            for teacher, pair in context.candidates(stage):
                if teacher.teacher_id == current_id:
                    continue
                load = state.load(teacher.teacher_id)
                try:
                    assert_eligible(teacher, stage, pair, load, options)
                except ConstraintViolation:
                    continue
                new_score = context.score(stage, teacher, pair, load + 1)
                if new_score < current_score - options.improvement_threshold:
                    state.reassign(stage.stage_id, teacher.teacher_id, current_score, new_score)
                    swaps += 1
                    break
        if swaps == 0:
            break
    _log(options, f"Local search: {iterations} passes, total cost {state.total_cost:.1f}")
    return iterations


def cone_fallback(context: _SolveContext, state: SolverState) -> int:
    """Assign leftover stages to teachers living in the same direction from the anchor."""

    anchor = context.options.anchor
    if anchor is None:
        return 0
    pending = []
    for stage in context.stages:
        if stage.stage_id in state.assignments or stage.geo is None:
            continue
        pending.append((distance_between(anchor, stage.geo), stage, stage.geo))
    pending.sort(key=lambda entry: entry[0])

    assigned = 0
    for anchor_distance, stage, stage_geo in pending:
        best: Optional[tuple[tuple[int, float, int], TeacherGeoInfo]] = None
        for index, teacher in enumerate(context.teachers):
            if teacher.home_geo is None:
                continue
            remaining = teacher.capacity_max - state.load(teacher.teacher_id)
            if remaining <= 0 or not is_elective_compatible(teacher, stage):
                continue
            angle = cone_angle(anchor, stage_geo, teacher.home_geo)
            if angle > context.options.cone_half_angle_deg:
                continue
            key = (-remaining, angle, index)
            if best is None or key < best[0]:
                best = (key, teacher)
        if best is None:
            continue
        state.assign(stage.stage_id, best[1].teacher_id, MatchingPhase.CONE_FALLBACK)
        context.anchor_metrics[stage.stage_id] = (anchor_distance, anchor_distance / FALLBACK_SPEED_KMH * 60.0)
        assigned += 1
    _log(context.options, f"Cone fallback: {assigned} stages assigned")
    return assigned


def balancing_fallback(context: _SolveContext, state: SolverState) -> int:
    """Assign leftover located stages to the least loaded compatible teacher, ignoring geography."""

    assigned = 0
    for stage in context.stages:
        if stage.stage_id in state.assignments or stage.geo is None:
            continue
        best: Optional[tuple[tuple[int, int], TeacherGeoInfo]] = None
        for index, teacher in enumerate(context.teachers):
            load = state.load(teacher.teacher_id)
            if load >= teacher.capacity_max or not is_elective_compatible(teacher, stage):
                continue
            key = (load, index)
            if best is None or key < best[0]:
                best = (key, teacher)
        if best is None:
            continue
        state.assign(stage.stage_id, best[1].teacher_id, MatchingPhase.BALANCING_FALLBACK)
        assigned += 1
    _log(context.options, f"Balancing fallback: {assigned} stages assigned")
    return assigned


def _unassigned_reasons(context: _SolveContext, state: SolverState, stage: StageGeoInfo) -> list[str]:
    reasons: list[str] = []
    candidates = context.candidates(stage)
    for teacher, pair in candidates:
        reason = hard_constraint_reason(teacher, stage, pair, state.load(teacher.teacher_id), context.options)
        if reason is not None and reason not in reasons:
            reasons.append(reason)
    if not candidates:
        reasons.append(NO_ROUTE_REASON)
    if not reasons:
        reasons.append(ALL_AT_CAPACITY_REASON)
    return reasons


def _materialize(context: _SolveContext, state: SolverState, started: float) -> MatchingResult:
    assignments: list[StageAssignment] = []
    unassigned: list[UnassignedStage] = []

    for stage in context.stages:
        teacher_id = state.assignments.get(stage.stage_id)
        if teacher_id is None:
            unassigned.append(
                UnassignedStage(stage.stage_id, stage.student_id, _unassigned_reasons(context, state, stage))
            )
            continue
        teacher = context.teacher_by_id[teacher_id]
        phase = state.phases[stage.stage_id]
        pair = context.pair(stage.stage_id, teacher_id)
        if phase is MatchingPhase.GREEDY and pair is not None:
            assignments.append(
                StageAssignment(
                    stage_id=stage.stage_id,
                    student_id=stage.student_id,
                    teacher_id=teacher_id,
                    distance_km=pair.distance_km,
                    duration_min=pair.duration_min,
                    score=context.score(stage, teacher, pair, state.load(teacher_id)),
                    phase=phase,
                    explanation=(
                        f"{teacher.display_name} - route {round(pair.distance_km)} km, {round(pair.duration_min)} min"
                    ),
                    estimated=pair.estimated,
                )
            )
        elif phase is MatchingPhase.CONE_FALLBACK:
            distance_km, duration_min = context.anchor_metrics[stage.stage_id]
            assignments.append(
                StageAssignment(
                    stage_id=stage.stage_id,
                    student_id=stage.student_id,
                    teacher_id=teacher_id,
                    distance_km=distance_km,
                    duration_min=duration_min,
                    score=CONE_PLACEHOLDER_SCORE,
                    phase=phase,
                    explanation=(
                        f"{teacher.display_name} - direction fallback, {round(distance_km)} km from the anchor"
                    ),
                    estimated=True,
                )
            )
        else:
            assignments.append(
                StageAssignment(
                    stage_id=stage.stage_id,
                    student_id=stage.student_id,
                    teacher_id=teacher_id,
                    distance_km=0.0,
                    duration_min=0.0,
                    score=BALANCING_PLACEHOLDER_SCORE,
                    phase=phase,
                    explanation=f"{teacher.display_name} - balancing fallback",
                    estimated=True,
                )
            )

    for stage in context.duplicates:
        unassigned.append(UnassignedStage(stage.stage_id, stage.student_id, [DUPLICATE_STAGE_REASON]))

    routed = [assignment for assignment in assignments if assignment.phase is MatchingPhase.GREEDY]
    total_duration = sum(assignment.duration_min for assignment in routed)
    total_distance = sum(assignment.distance_km for assignment in routed)
    load_per_teacher = {teacher.teacher_id: state.load(teacher.teacher_id) for teacher in context.teachers}
    loads = np.array(list(load_per_teacher.values()), dtype=float)
    assigned_by_phase = {int(phase): 0 for phase in MatchingPhase}
    for assignment in assignments:
        assigned_by_phase[int(assignment.phase)] += 1

    stats = MatchingStats(
        total_stages=len(context.stages) + len(context.duplicates),
        total_assigned=len(assignments),
        total_unassigned=len(unassigned),
        total_duration_min=total_duration,
        average_duration_min=total_duration / len(routed) if routed else 0.0,
        total_distance_km=total_distance,
        average_distance_km=total_distance / len(routed) if routed else 0.0,
        load_per_teacher=load_per_teacher,
        mean_load=float(loads.mean()) if loads.size else 0.0,
        load_std_dev=float(loads.std()) if loads.size else 0.0,
        assigned_by_phase=assigned_by_phase,
    )
    elapsed_ms = (time.perf_counter() - started) * 1000.0
    return MatchingResult(assignments=assignments, unassigned=unassigned, stats=stats, elapsed_ms=elapsed_ms)


def solve_stage_matching(
    stages: Sequence[StageGeoInfo],
    teachers: Sequence[TeacherGeoInfo],
    pairs: Sequence[TeacherStagePair],
    options: MatchingOptions | None = None,
) -> MatchingResult:
    """Assign ``stages`` to ``teachers`` using precomputed route ``pairs``.

    Never raises for unsatisfiable input: stages that cannot be placed are
    reported in ``unassigned`` with their reasons. A repeated stage id is
    matched once; its later occurrences are reported as unassigned.
    """

    started = time.perf_counter()
    options = options or MatchingOptions()
    unique_stages, duplicates = _split_duplicates(stages)
    if duplicates:
        duplicate_ids = sorted({stage.stage_id for stage in duplicates})
        logger.warning(f"Ignoring {len(duplicates)} duplicate stage entries: {duplicate_ids}")
    context = _SolveContext(
        stages=unique_stages,
        teachers=teachers,
        options=options,
        pairs=_index_pairs(pairs, unique_stages, teachers),
        teacher_by_id={teacher.teacher_id: teacher for teacher in teachers},
        average_load=len(unique_stages) / len(teachers) if teachers else 0.0,
        duplicates=duplicates,
    )
    state = SolverState(loads={teacher.teacher_id: 0 for teacher in teachers})
    _log(options, f"Solving {len(stages)} stages, {len(teachers)} teachers, {len(context.pairs)} route pairs")

    greedy_assignment(context, state)
    if options.use_local_search and state.assignments:
        local_search(context, state)
    if options.anchor is not None and options.anchor_fallback_enabled:
        cone_fallback(context, state)
    if options.balance_fallback_enabled:
        balancing_fallback(context, state)

    result = _materialize(context, state, started)
    logger.info(
        f"Matching done in {result.elapsed_ms:.0f}ms: {result.stats.total_assigned} assigned, "
        f"{result.stats.total_unassigned} unassigned"
    )
    return result
