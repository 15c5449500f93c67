"""Intervention playbook: map risk, lifecycle status and prior outcomes to ranked actions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from admitpulse.dispatch.backoff import FailureReason
from admitpulse.dispatch.ledger import LedgerEntry, LedgerStatus
from admitpulse.students.types import (
    ActionType,
    ContactOutcome,
    InterventionCandidate,
    LifecycleStatus,
    RiskAssessment,
    RiskLevel,
    Student,
    channel_for,
    is_voice_action,
)

DEFAULT_MAX_ACTIONS = 3
DOCUMENTS_STALE_DAYS = 5
MEDIUM_RISK_INACTIVE_DAYS = 2
WELCOME_WINDOW_DAYS = 1

PRIORITY_URGENT = 1
PRIORITY_FOLLOWUP = 2
PRIORITY_ROUTINE = 3

RETRY_OUTCOMES = frozenset({ContactOutcome.FAILED, ContactOutcome.NO_ANSWER})
PERMANENT_FAILURE_REASONS = frozenset({FailureReason.INVALID_NUMBER, FailureReason.OPTED_OUT})


@dataclass(frozen=True)
class PriorOutcomes:
    """Signals derived from a student's ledger history."""

    voice_exhausted: bool = False
    permanent_failure: bool = False

    @property
    def needs_escalation(self) -> bool:
        return self.voice_exhausted or self.permanent_failure

    @classmethod
    def from_history(cls, entries: Iterable[LedgerEntry]) -> "PriorOutcomes":
        """Only outcomes resolved after the last sent escalation count."""
        entries = list(entries)
        escalated_at: Optional[datetime] = None
        for entry in entries:
            if entry.action_type is ActionType.COUNSELOR_ESCALATION and entry.status in (
                LedgerStatus.SENT,
                LedgerStatus.DELIVERED,
                LedgerStatus.PENDING,
            ):
                if escalated_at is None or entry.created_at > escalated_at:
                    escalated_at = entry.created_at

        voice_exhausted = False
        permanent_failure = False
        for entry in entries:
            if entry.action_type is ActionType.COUNSELOR_ESCALATION:
                continue
            resolved = entry.resolved_at or entry.created_at
            if escalated_at is not None and resolved <= escalated_at:
                continue
            if entry.status is LedgerStatus.EXHAUSTED and is_voice_action(entry.action_type):
                voice_exhausted = True
            if entry.status is LedgerStatus.FAILED and entry.failure_reason in PERMANENT_FAILURE_REASONS:
                permanent_failure = True
        return cls(voice_exhausted=voice_exhausted, permanent_failure=permanent_failure)


class InterventionPolicy:
    """Deterministic rule list; same snapshot and history give the same actions."""

    def __init__(self, max_actions: int = DEFAULT_MAX_ACTIONS) -> None:
        if max_actions < 1:
            raise ValueError("max_actions must be at least 1")
        self.max_actions = max_actions

    def recommend(
        self,
        student: Student,
        assessment: RiskAssessment,
        prior: PriorOutcomes | None = None,
    ) -> List[InterventionCandidate]:
        prior = prior or PriorOutcomes()
        proposals: List[tuple] = []

        def propose(action: ActionType, priority: int, reason: str) -> None:
            proposals.append((action, priority, reason))

        if student.status is LifecycleStatus.DROPOUT_RISK:
            propose(ActionType.COUNSELOR_ESCALATION, PRIORITY_URGENT, "Student flagged as dropout risk")

        if prior.needs_escalation:
            why = "Voice retries exhausted" if prior.voice_exhausted else "Permanent delivery failure"
            propose(ActionType.COUNSELOR_ESCALATION, PRIORITY_URGENT, why)

        if assessment.level is RiskLevel.HIGH:
            propose(ActionType.IMMEDIATE_VOICE_CALL, PRIORITY_URGENT, f"High risk (score {assessment.score})")

        if (
            student.status is LifecycleStatus.DOCUMENTS_PENDING
            and assessment.days_since_activity >= DOCUMENTS_STALE_DAYS
        ):
            propose(
                ActionType.DOCUMENT_REMINDER,
                PRIORITY_FOLLOWUP,
                f"Documents pending for {assessment.days_since_activity} days",
            )

        if assessment.level is RiskLevel.MEDIUM and assessment.days_since_activity >= MEDIUM_RISK_INACTIVE_DAYS:
            propose(
                ActionType.WHATSAPP_FOLLOWUP,
                PRIORITY_FOLLOWUP,
                f"Medium risk, inactive {assessment.days_since_activity} days",
            )

        if student.last_contact_outcome in RETRY_OUTCOMES and not any(is_voice_action(p[0]) for p in proposals):
            propose(ActionType.VOICE_RETRY, PRIORITY_FOLLOWUP, f"Last contact {student.last_contact_outcome.value}")

        if student.status is LifecycleStatus.INQUIRY_SUBMITTED and assessment.days_since_created < WELCOME_WINDOW_DAYS:
            propose(ActionType.WELCOME_MESSAGE, PRIORITY_ROUTINE, "New inquiry")

        return self._rank(student.student_id, proposals)

    def _rank(self, student_id: str, proposals: List[tuple]) -> List[InterventionCandidate]:
        seen = set()
        unique = []
        for action, priority, reason in proposals:
            if action in seen:
                continue
            seen.add(action)
            unique.append(
                InterventionCandidate(
                    student_id=student_id,
                    action_type=action,
                    priority=priority,
                    reason=reason,
                    channel=channel_for(action),
                )
            )
        # sorted() is stable, so rule order breaks priority ties
        ranked = sorted(unique, key=lambda c: c.priority)
        return ranked[: self.max_actions]
