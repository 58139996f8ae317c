"""Hard constraints and soft score of a teacher/stage candidate."""

from __future__ import annotations

import re
from typing import Optional

from ...errors import ConstraintViolation
from ...models.domain import ExclusionKind, StageGeoInfo, TeacherGeoInfo, TeacherStagePair
from ..hashing import strip_accents
from .models import MatchingOptions

DURATION_REFERENCE_MIN = 60.0
DISTANCE_REFERENCE_KM = 50.0
BALANCE_POINTS_PER_STAGE = 20.0

# Language and ancient-language subjects only taught to students holding the option.
ELECTIVE_SUBJECTS = frozenset(
    {
        "allemand",
        "espagnol",
        "italien",
        "latin",
        "grec",
        "portugais",
        "chinois",
        "russe",
        "arabe",
        "lca",
        "lv2",
        "lv3",
        "occitan",
        "breton",
        "basque",
    }
)

_TOKEN_SPLIT = re.compile(r"[\s/\-_,()]+")


def _fold(value: str) -> str:
    return strip_accents(value).lower().strip()


def is_elective_subject(subject: Optional[str]) -> bool:
    if not subject:
        return False
    folded = _fold(subject)
    if folded in ELECTIVE_SUBJECTS:
        return True
    return any(token in ELECTIVE_SUBJECTS for token in _TOKEN_SPLIT.split(folded))


def is_elective_compatible(teacher: TeacherGeoInfo, stage: StageGeoInfo) -> bool:
    """Non-elective subjects are always compatible; electives need a matching student option."""
    if not is_elective_subject(teacher.subject):
        return True
    subject = _fold(teacher.subject or "")
    for option in stage.student_options:
        folded = _fold(option)
        if folded and (folded == subject or folded in subject or subject in folded):
            return True
    return False


def is_student_in_teacher_classes(stage: StageGeoInfo, teacher: TeacherGeoInfo) -> bool:
    if not stage.student_class or not teacher.classes:
        return False
    return stage.student_class in teacher.classes


def exclusion_reason(teacher: TeacherGeoInfo, stage: StageGeoInfo) -> Optional[str]:
    """First matching exclusion of ``teacher`` for ``stage``, as a readable reason.

    Class exclusions are not evaluated here.
    """
    address = _fold(stage.address or "")
    for exclusion in teacher.exclusions:
        if exclusion.kind is ExclusionKind.STUDENT and exclusion.value == stage.student_id:
            return f"Student exclusion: {exclusion.reason or 'unspecified'}"
        if exclusion.kind in (ExclusionKind.ZONE, ExclusionKind.SECTOR):
            value = _fold(exclusion.value)
            if value and value in address:
                return f"Zone exclusion: {exclusion.value}"
    return None


def assert_eligible(
    teacher: TeacherGeoInfo,
    stage: StageGeoInfo,
    pair: TeacherStagePair,
    current_load: int,
    options: MatchingOptions,
) -> None:
    """Raise ``ConstraintViolation`` for the first hard constraint ``pair`` breaks.

    Order: capacity, duration, distance, elective subject, exclusions.
    """

    if current_load >= teacher.capacity_max:
        raise ConstraintViolation("capacity", "Maximum capacity reached")
    if options.max_duration_min and pair.duration_min > options.max_duration_min:
        raise ConstraintViolation(
            "duration",
            f"Route too long ({round(pair.duration_min)} min > {options.max_duration_min:g} min)",
        )
    if options.max_distance_km and pair.distance_km > options.max_distance_km:
        raise ConstraintViolation(
            "distance",
            f"Distance too far ({round(pair.distance_km)} km > {options.max_distance_km:g} km)",
        )
    if not is_elective_compatible(teacher, stage):
        raise ConstraintViolation("elective", f"{teacher.subject} requires a matching student option")
    reason = exclusion_reason(teacher, stage)
    if reason is not None:
        raise ConstraintViolation("exclusion", reason)


def hard_constraint_reason(
    teacher: TeacherGeoInfo,
    stage: StageGeoInfo,
    pair: TeacherStagePair,
    current_load: int,
    options: MatchingOptions,
) -> Optional[str]:
    try:
        assert_eligible(teacher, stage, pair, current_load, options)
    except ConstraintViolation as violation:
        return violation.reason
    return None


def compute_score(
    pair: TeacherStagePair,
    current_load: int,
    average_load: float,
    options: MatchingOptions,
    in_teacher_classes: bool = False,
) -> float:
    """Weighted cost of a candidate, lower is better.

    With every weight at zero the score is the distance sub-score alone.
    """

    duration_score = min(pair.duration_min / DURATION_REFERENCE_MIN, 1.0) * 100.0
    distance_score = min(pair.distance_km / DISTANCE_REFERENCE_KM, 1.0) * 100.0
    balance_score = max(0.0, current_load - average_load) * BALANCE_POINTS_PER_STAGE
    affinity_score = 0.0 if in_teacher_classes else 100.0

    total_weight = options.weight_duration + options.weight_distance + options.weight_balance + options.weight_affinity
    if total_weight <= 0:
        return distance_score

    return (
        options.weight_duration * duration_score
        + options.weight_distance * distance_score
        + options.weight_balance * balance_score
        + options.weight_affinity * affinity_score
    ) / total_weight
