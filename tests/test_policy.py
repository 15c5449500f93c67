"""Tests for the intervention playbook."""

from __future__ import annotations

from datetime import timedelta

import pytest

from admitpulse.dispatch.ledger import LedgerStatus, open_attempt
from admitpulse.interventions.playbook import InterventionPolicy, PriorOutcomes
from admitpulse.risk.scoring import score
from admitpulse.students.types import (
    ActionType,
    Channel,
    ContactOutcome,
    InterventionCandidate,
    LifecycleStatus,
    channel_for,
)


def _actions(candidates) -> list:
    return [c.action_type for c in candidates]


def _entry(action: ActionType, created_at, status: LedgerStatus, failure_reason: str = ""):
    candidate = InterventionCandidate("s1", action, 1, "test", channel_for(action))
    entry = open_attempt(candidate, created_at)
    if status is LedgerStatus.PENDING:
        return entry
    return entry.transition(status=status, resolved_at=created_at + timedelta(minutes=1), failure_reason=failure_reason)


def test_quiet_inquiry_gets_whatsapp_followup(student_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=9),
        last_activity_at=now - timedelta(days=8),
    )

    candidates = InterventionPolicy().recommend(student, score(student, now))

    assert _actions(candidates) == [ActionType.WHATSAPP_FOLLOWUP]
    assert candidates[0].channel is Channel.WHATSAPP
    assert candidates[0].priority == 2


def test_dropout_risk_always_escalates_first(student_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.DROPOUT_RISK,
        created_at=now - timedelta(days=10),
        last_activity_at=now - timedelta(days=8),
    )

    candidates = InterventionPolicy().recommend(student, score(student, now))

    assert _actions(candidates) == [ActionType.COUNSELOR_ESCALATION, ActionType.IMMEDIATE_VOICE_CALL]
    assert candidates[0].priority == 1
    assert candidates[0].channel is Channel.COUNSELOR


def test_dropout_risk_escalates_even_at_low_activity_gap(student_factory, now) -> None:
    student = student_factory(status=LifecycleStatus.DROPOUT_RISK)

    candidates = InterventionPolicy().recommend(student, score(student, now))

    assert _actions(candidates) == [ActionType.COUNSELOR_ESCALATION]


def test_exhausted_voice_retries_trigger_escalation(student_factory, now) -> None:
    student = student_factory()
    history = [_entry(ActionType.IMMEDIATE_VOICE_CALL, now - timedelta(hours=3), LedgerStatus.EXHAUSTED, "no_answer")]

    prior = PriorOutcomes.from_history(history)
    candidates = InterventionPolicy().recommend(student, score(student, now), prior)

    assert prior.voice_exhausted
    assert _actions(candidates) == [ActionType.COUNSELOR_ESCALATION]
    assert candidates[0].reason == "Voice retries exhausted"


def test_permanent_failure_triggers_escalation(now) -> None:
    history = [_entry(ActionType.WHATSAPP_FOLLOWUP, now - timedelta(hours=1), LedgerStatus.FAILED, "invalid_number")]

    prior = PriorOutcomes.from_history(history)

    assert prior.permanent_failure
    assert prior.needs_escalation


def test_transient_failure_does_not_escalate(now) -> None:
    history = [_entry(ActionType.IMMEDIATE_VOICE_CALL, now - timedelta(hours=1), LedgerStatus.FAILED, "no_answer")]

    assert not PriorOutcomes.from_history(history).needs_escalation


def test_escalation_clears_earlier_outcomes(now) -> None:
    history = [
        _entry(ActionType.IMMEDIATE_VOICE_CALL, now - timedelta(hours=5), LedgerStatus.EXHAUSTED, "no_answer"),
        _entry(ActionType.COUNSELOR_ESCALATION, now - timedelta(hours=2), LedgerStatus.SENT),
    ]

    assert not PriorOutcomes.from_history(history).needs_escalation


def test_duplicates_collapse_and_output_is_capped(student_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.DOCUMENTS_PENDING,
        created_at=now - timedelta(days=20),
        last_activity_at=now - timedelta(days=8),
        contact_attempts=1,
        last_contact_outcome=ContactOutcome.NO_ANSWER,
    )
    assessment = score(student, now)
    prior = PriorOutcomes(voice_exhausted=True)

    full = InterventionPolicy(max_actions=5).recommend(student, assessment, prior)
    capped = InterventionPolicy(max_actions=2).recommend(student, assessment, prior)

    assert _actions(full) == [
        ActionType.COUNSELOR_ESCALATION,
        ActionType.IMMEDIATE_VOICE_CALL,
        ActionType.DOCUMENT_REMINDER,
    ]
    assert _actions(capped) == _actions(full)[:2]


def test_dropout_and_prior_escalation_dedupe_to_first_reason(student_factory, now) -> None:
    student = student_factory(status=LifecycleStatus.DROPOUT_RISK)

    candidates = InterventionPolicy().recommend(student, score(student, now), PriorOutcomes(permanent_failure=True))

    assert _actions(candidates) == [ActionType.COUNSELOR_ESCALATION]
    assert candidates[0].reason == "Student flagged as dropout risk"


def test_voice_retry_after_no_answer(student_factory, now) -> None:
    student = student_factory(
        last_activity_at=now - timedelta(days=1),
        contact_attempts=1,
        last_contact_outcome=ContactOutcome.NO_ANSWER,
    )

    candidates = InterventionPolicy().recommend(student, score(student, now))

    assert _actions(candidates) == [ActionType.VOICE_RETRY]


def test_equal_priorities_keep_rule_order(student_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.DOCUMENTS_PENDING,
        created_at=now - timedelta(days=6),
        last_activity_at=now - timedelta(days=5),
    )

    candidates = InterventionPolicy().recommend(student, score(student, now))

    assert _actions(candidates) == [ActionType.DOCUMENT_REMINDER, ActionType.WHATSAPP_FOLLOWUP]


def test_new_inquiry_gets_welcome(student_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(hours=2),
        last_activity_at=None,
    )

    candidates = InterventionPolicy().recommend(student, score(student, now))

    assert _actions(candidates) == [ActionType.WELCOME_MESSAGE]
    assert candidates[0].priority == 3


def test_recommend_is_idempotent(student_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.DOCUMENTS_PENDING,
        created_at=now - timedelta(days=20),
        last_activity_at=now - timedelta(days=8),
    )
    policy = InterventionPolicy()
    assessment = score(student, now)

    assert policy.recommend(student, assessment) == policy.recommend(student, assessment)


def test_max_actions_must_be_positive() -> None:
    with pytest.raises(ValueError):
        InterventionPolicy(max_actions=0)
