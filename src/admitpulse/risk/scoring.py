"""Additive, rule-based dropout risk scoring for prospective students.

Every rule tests a disjoint numeric band, so the score, the level and the
order of the contributing factors are fully determined by the snapshot and
the evaluation time. This module is the only place risk constants live.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Tuple

from admitpulse.errors import InvalidStudentError
from admitpulse.students.types import (
    PROGRESSED_STATUSES,
    ContactOutcome,
    LifecycleStatus,
    RiskAssessment,
    RiskLevel,
    Student,
)

SECONDS_PER_DAY = 24 * 60 * 60

MIN_SCORE = 0
MAX_SCORE = 100
HIGH_THRESHOLD = 60
MEDIUM_THRESHOLD = 30

# (minimum days, points, factor); highest tier wins
ACTIVITY_GAP_TIERS: List[Tuple[int, int, str]] = [
    (7, 30, "No activity for 7+ days"),
    (3, 15, "No activity for 3+ days"),
    (1, 5, "No activity for 1+ days"),
]

CONTACT_ATTEMPT_TIERS: List[Tuple[int, int, str]] = [
    (3, 25, "3+ unreturned contact attempts"),
    (2, 15, "2 unreturned contact attempts"),
    (1, 5, "1 unreturned contact attempt"),
]

STATUS_WEIGHTS = {
    LifecycleStatus.INQUIRY_SUBMITTED: 10,
    LifecycleStatus.DOCUMENTS_PENDING: 20,
    LifecycleStatus.APPLICATION_IN_PROGRESS: 5,
    LifecycleStatus.DROPOUT_RISK: 40,
    LifecycleStatus.COUNSELOR_REQUIRED: 35,
}

STALLED_SINCE_CREATION_TIERS: List[Tuple[int, int, str]] = [
    (14, 20, "No progress 14+ days after inquiry"),
    (7, 10, "No progress 7+ days after inquiry"),
]

FAILED_OUTCOMES = frozenset({ContactOutcome.FAILED, ContactOutcome.NO_ANSWER})
FAILED_OUTCOME_POINTS = 15


def whole_days_between(earlier: datetime, later: datetime) -> int:
    """Whole days elapsed, floored; negative gaps count as zero."""
    seconds = (later - earlier).total_seconds()
    if seconds <= 0:
        return 0
    return int(seconds // SECONDS_PER_DAY)


def risk_level_for(score: int) -> RiskLevel:
    """Map a score to its level; monotone in score."""
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _tier(value: int, tiers: List[Tuple[int, int, str]]) -> Tuple[int, str] | None:
    for minimum, points, factor in tiers:
        if value >= minimum:
            return points, factor
    return None


def _check_snapshot(student: Student, now: datetime) -> None:
    if now.tzinfo is None:
        raise InvalidStudentError("evaluation time must be timezone-aware")
    if student.status is LifecycleStatus.DELETED:
        raise InvalidStudentError(f"student {student.student_id} is deleted")
    if student.created_at is None:
        raise InvalidStudentError(f"student {student.student_id} has no created_at")
    for name in ("created_at", "last_activity_at", "last_contact_at"):
        value = getattr(student, name)
        if value is not None and value.tzinfo is None:
            raise InvalidStudentError(f"student {student.student_id}: {name} is not timezone-aware")
    if student.contact_attempts < 0:
        raise InvalidStudentError(f"student {student.student_id}: negative contact_attempts")


def score(student: Student, now: datetime) -> RiskAssessment:
    """Score a student snapshot at ``now``."""
    _check_snapshot(student, now)

    days_inactive = whole_days_between(student.activity_reference, now)
    days_since_created = whole_days_between(student.created_at, now)

    total = 0
    factors: List[str] = []

    hit = _tier(days_inactive, ACTIVITY_GAP_TIERS)
    if hit:
        total += hit[0]
        factors.append(hit[1])

    hit = _tier(student.contact_attempts, CONTACT_ATTEMPT_TIERS)
    if hit:
        total += hit[0]
        factors.append(hit[1])

    status_points = STATUS_WEIGHTS.get(student.status, 0)
    if status_points:
        total += status_points
        factors.append(f"Status {student.status.value}")

    if student.status not in PROGRESSED_STATUSES:
        hit = _tier(days_since_created, STALLED_SINCE_CREATION_TIERS)
        if hit:
            total += hit[0]
            factors.append(hit[1])

    if student.last_contact_outcome in FAILED_OUTCOMES:
        total += FAILED_OUTCOME_POINTS
        factors.append(f"Last contact {student.last_contact_outcome.value}")

    total = max(MIN_SCORE, min(MAX_SCORE, total))
    return RiskAssessment(
        score=total,
        level=risk_level_for(total),
        factors=factors,
        days_since_activity=days_inactive,
        days_since_created=days_since_created,
        assessed_at=now,
    )


def risk_patch(assessment: RiskAssessment) -> dict:
    """Student fields written back after an assessment."""
    return {
        "risk_score": assessment.score,
        "risk_level": assessment.level,
        "risk_factors": list(assessment.factors),
        "last_assessed_at": assessment.assessed_at,
    }


class RiskScorer:
    """Callable wrapper so the engine can take the scorer as a collaborator."""

    def score(self, student: Student, now: datetime) -> RiskAssessment:
        return score(student, now)
