"""Stage matching request/response schemas."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class GeoPointModel(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class ExclusionModel(BaseModel):
    kind: str = Field(default="classe", description="classe, zone, eleve or secteur.")
    value: str
    reason: Optional[str] = None


class StageModel(BaseModel):
    id: str
    student_id: str = ""
    address: str = ""
    student_class: Optional[str] = None
    student_options: List[str] = Field(default_factory=list)
    lat: Optional[float] = None
    lon: Optional[float] = None
    geo_status: Optional[str] = Field(default=None, description="pending, ok, error, manual or not_found.")
    company_name: Optional[str] = None
    tutor: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class TeacherModel(BaseModel):
    id: str
    last_name: str = ""
    first_name: str = ""
    capacity: Optional[int] = Field(default=None, ge=0)
    subject: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    geo_status: Optional[str] = None
    classes: List[str] = Field(default_factory=list)
    exclusions: List[ExclusionModel] = Field(default_factory=list)


class RoutePairModel(BaseModel):
    teacher_id: str
    stage_id: str
    distance_km: float = Field(..., ge=0)
    duration_min: float = Field(..., ge=0)
    is_valid: bool = True


class MatchingOptionsModel(BaseModel):
    weight_duration: Optional[float] = Field(None, ge=0)
    weight_distance: Optional[float] = Field(None, ge=0)
    weight_balance: Optional[float] = Field(None, ge=0)
    weight_affinity: Optional[float] = Field(None, ge=0)
    max_duration_min: Optional[float] = Field(None, ge=0)
    max_distance_km: Optional[float] = Field(None, ge=0)
    max_candidates_per_stage: Optional[int] = Field(None, ge=1)
    pruning_radius_km: Optional[float] = Field(None, gt=0)
    use_local_search: Optional[bool] = None
    local_search_max_iterations: Optional[int] = Field(None, ge=0)
    local_search_timeout_seconds: Optional[float] = Field(None, ge=0)
    improvement_threshold: Optional[float] = Field(None, ge=0)
    anchor: Optional[GeoPointModel] = None
    anchor_fallback_enabled: Optional[bool] = None
    cone_half_angle_deg: Optional[float] = Field(None, gt=0, le=180)
    balance_fallback_enabled: Optional[bool] = None
    verbose: bool = False


class SolveRequest(BaseModel):
    stages: List[StageModel]
    teachers: List[TeacherModel]
    pairs: List[RoutePairModel]
    options: Optional[MatchingOptionsModel] = None


class RunRequest(BaseModel):
    stages: List[StageModel]
    teachers: List[TeacherModel]
    options: Optional[MatchingOptionsModel] = None


class AssignmentModel(BaseModel):
    stage_id: str
    student_id: str
    teacher_id: str
    distance_km: float
    duration_min: float
    score: float
    phase: int = Field(..., description="1 greedy/local search, 3 cone fallback, 4 balancing fallback.")
    explanation: str
    estimated: bool = False
    lat: Optional[float] = None
    lon: Optional[float] = None


class UnassignedModel(BaseModel):
    stage_id: str
    student_id: str
    reasons: List[str]


class MatchingStatsModel(BaseModel):
    total_stages: int
    total_assigned: int
    total_unassigned: int
    total_duration_min: float
    average_duration_min: float
    total_distance_km: float
    average_distance_km: float
    load_per_teacher: Dict[str, int]
    mean_load: float
    load_std_dev: float
    assigned_by_phase: Dict[int, int]


class SolveResponse(BaseModel):
    assignments: List[AssignmentModel]
    unassigned: List[UnassignedModel]
    stats: MatchingStatsModel
    elapsed_ms: float


class RunResponse(SolveResponse):
    geocoding: dict
    routing: dict
