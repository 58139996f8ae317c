"""Value types for the stage matching solver."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

from ...config import Settings, settings
from ...models.domain import GeoPoint


class MatchingPhase(IntEnum):
    """Phase that produced an assignment. Local search swaps keep the greedy tag."""

    GREEDY = 1
    CONE_FALLBACK = 3
    BALANCING_FALLBACK = 4


@dataclass(slots=True)
class MatchingOptions:
    weight_duration: float = 60.0
    weight_distance: float = 20.0
    weight_balance: float = 20.0
    weight_affinity: float = 0.0
    max_duration_min: Optional[float] = 60.0
    max_distance_km: Optional[float] = 50.0
    max_candidates_per_stage: int = 10
    pruning_radius_km: float = 100.0
    use_local_search: bool = True
    local_search_max_iterations: int = 50
    local_search_timeout_seconds: float = 3.0
    improvement_threshold: float = 1.0
    anchor: Optional[GeoPoint] = None
    anchor_fallback_enabled: bool = True
    cone_half_angle_deg: float = 45.0
    balance_fallback_enabled: bool = True
    verbose: bool = False

    @classmethod
    def from_settings(cls, config: Settings | None = None, **overrides) -> "MatchingOptions":
        config = config or settings
        values = {
            "weight_duration": config.weight_duration,
            "weight_distance": config.weight_distance,
            "weight_balance": config.weight_balance,
            "weight_affinity": config.weight_affinity,
            "max_duration_min": config.max_duration_min,
            "max_distance_km": config.max_distance_km,
            "max_candidates_per_stage": config.max_candidates_per_stage,
            "pruning_radius_km": config.pruning_radius_km,
            "use_local_search": config.use_local_search,
            "local_search_max_iterations": config.local_search_max_iterations,
            "local_search_timeout_seconds": config.local_search_timeout_seconds,
            "cone_half_angle_deg": config.cone_half_angle_deg,
        }
        values.update(overrides)
        return cls(**values)


@dataclass(slots=True)
class SolverState:
    """Working solution owned by a single solve call."""

    assignments: dict[str, str] = field(default_factory=dict)
    loads: dict[str, int] = field(default_factory=dict)
    total_cost: float = 0.0
    phases: dict[str, MatchingPhase] = field(default_factory=dict)

    def load(self, teacher_id: str) -> int:
        return self.loads.get(teacher_id, 0)

    def assign(self, stage_id: str, teacher_id: str, phase: MatchingPhase, cost: float = 0.0) -> None:
        if stage_id in self.assignments:
            raise ValueError(f"Stage {stage_id} is already assigned")
        self.assignments[stage_id] = teacher_id
        self.loads[teacher_id] = self.load(teacher_id) + 1
        self.phases[stage_id] = phase
        self.total_cost += cost

    def reassign(self, stage_id: str, teacher_id: str, old_cost: float, new_cost: float) -> None:
        previous = self.assignments[stage_id]
        self.loads[previous] = self.load(previous) - 1
        self.loads[teacher_id] = self.load(teacher_id) + 1
        self.assignments[stage_id] = teacher_id
        self.total_cost = self.total_cost - old_cost + new_cost


@dataclass(slots=True)
class StageAssignment:
    stage_id: str
    student_id: str
    teacher_id: str
    distance_km: float
    duration_min: float
    score: float
    phase: MatchingPhase
    explanation: str
    estimated: bool = False


@dataclass(slots=True)
class UnassignedStage:
    stage_id: str
    student_id: str
    reasons: list[str]


@dataclass(slots=True)
class MatchingStats:
    total_stages: int
    total_assigned: int
    total_unassigned: int
    total_duration_min: float
    average_duration_min: float
    total_distance_km: float
    average_distance_km: float
    load_per_teacher: dict[str, int]
    mean_load: float
    load_std_dev: float
    assigned_by_phase: dict[int, int]


@dataclass(slots=True)
class MatchingResult:
    assignments: list[StageAssignment]
    unassigned: list[UnassignedStage]
    stats: MatchingStats
    elapsed_ms: float
