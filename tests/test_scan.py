"""End-to-end tests for scan cycles."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

import pytest

from admitpulse.channels.gateways import GatewayResult
from admitpulse.config import DispatchConfig, EligibilityConfig, EngineConfig, EngineSettings
from admitpulse.dispatch.ledger import LedgerStatus, open_attempt
from admitpulse.engine.scan import ScanEngine, merge_retries
from admitpulse.errors import ScanAlreadyRunningError, StoreUnavailableError
from admitpulse.store.memory import InMemoryStore
from admitpulse.students.types import (
    ActionType,
    Channel,
    InterventionCandidate,
    LifecycleStatus,
    RiskLevel,
    channel_for,
)


def _settings(**eligibility) -> EngineSettings:
    return EngineSettings(
        eligibility=EligibilityConfig(**eligibility),
        dispatch=DispatchConfig(rate_limit_per_minute=0),
    )


def _candidate(action: ActionType, student_id: str = "s1") -> InterventionCandidate:
    return InterventionCandidate(student_id, action, 1, "test", channel_for(action))


def test_quiet_inquiry_gets_followup_and_risk_written(student_factory, gateway_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=9),
        last_activity_at=now - timedelta(days=8),
    )
    store = InMemoryStore([student])
    whatsapp = gateway_factory(GatewayResult.sent("wamid.1"))
    engine = ScanEngine(store, {Channel.WHATSAPP: whatsapp}, settings=_settings())

    stats = engine.run_cycle(now)

    saved = store.get_student("s1")
    assert saved.risk_score == 50
    assert saved.risk_level is RiskLevel.MEDIUM
    assert saved.last_assessed_at == now
    assert saved.contact_attempts == 1
    assert [c["action_type"] for c in whatsapp.calls] == [ActionType.WHATSAPP_FOLLOWUP]
    assert stats["sent"] == 1
    assert stats.risk_levels == {"medium": 1}


def test_dropout_risk_escalates_past_daily_cap(student_factory, gateway_factory, now) -> None:
    student = student_factory(status=LifecycleStatus.DROPOUT_RISK)
    sent_today = []
    for hours in (1, 2, 3):
        entry = open_attempt(_candidate(ActionType.WHATSAPP_FOLLOWUP), now - timedelta(hours=hours))
        sent_today.append(entry.transition(status=LedgerStatus.SENT, resolved_at=entry.created_at))
    store = InMemoryStore([student], ledger=sent_today)
    counselor = gateway_factory(GatewayResult.sent("ticket-7"))
    engine = ScanEngine(store, {Channel.COUNSELOR: counselor}, settings=_settings())

    engine.run_cycle(now)

    assert [c["action_type"] for c in counselor.calls] == [ActionType.COUNSELOR_ESCALATION]
    assert store.get_student("s1").contact_attempts == 0


def test_unanswered_calls_retry_then_exhaust_then_escalate(student_factory, gateway_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=20),
        last_activity_at=now - timedelta(days=8),
    )
    store = InMemoryStore([student])
    voice = gateway_factory(GatewayResult.failed("no_answer", "call not answered"))
    counselor = gateway_factory(GatewayResult.sent("ticket-1"))
    engine = ScanEngine(
        store,
        {Channel.VOICE: voice, Channel.COUNSELOR: counselor},
        settings=_settings(daily_contact_cap=10, voice_cooldown_hours=0),
    )

    at = now
    delays = []
    for _ in range(3):
        engine.run_cycle(at)
        latest = store.ledger_entries_for("s1")[-1]
        assert latest.status is LedgerStatus.FAILED
        delays.append(latest.retry_at - at)
        at = latest.retry_at

    final = engine.run_cycle(at)
    attempts = store.ledger_entries_for("s1")

    assert delays == [timedelta(minutes=1), timedelta(minutes=2), timedelta(minutes=4)]
    assert [e.attempt_number for e in attempts] == [1, 2, 3, 4]
    assert attempts[-1].status is LedgerStatus.EXHAUSTED
    assert final["exhausted"] == 1
    assert len(voice.calls) == 4
    assert counselor.calls == []

    engine.run_cycle(at + timedelta(minutes=1))

    assert [c["action_type"] for c in counselor.calls] == [ActionType.COUNSELOR_ESCALATION]


def test_retry_waits_for_cooldown(student_factory, gateway_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=20),
        last_activity_at=now - timedelta(days=8),
    )
    store = InMemoryStore([student])
    voice = gateway_factory(GatewayResult.failed("busy"))
    engine = ScanEngine(store, {Channel.VOICE: voice}, settings=_settings())

    engine.run_cycle(now)
    stats = engine.run_cycle(now + timedelta(minutes=5))

    assert len(voice.calls) == 1
    assert stats.denied_by_reason == {"cooldown active": 1}
    # the denied retry is still due
    assert len(store.pending_ledger_entries_due_before(now + timedelta(minutes=6))) == 1


def test_one_bad_student_does_not_fail_the_cycle(student_factory, gateway_factory, now) -> None:
    class FlakyStore(InMemoryStore):
        def ledger_entries_for(self, student_id):
            if student_id == "bad":
                raise RuntimeError("disk on fire")
            return super().ledger_entries_for(student_id)

    quiet = dict(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=9),
        last_activity_at=now - timedelta(days=8),
    )
    store = FlakyStore([student_factory("bad", **quiet), student_factory("good", **quiet)])
    whatsapp = gateway_factory()
    engine = ScanEngine(store, {Channel.WHATSAPP: whatsapp}, settings=_settings())

    stats = engine.run_cycle(now)

    assert stats["errors"] == 1
    assert stats["sent"] == 1
    assert [c["target"] for c in whatsapp.calls] == ["+15550001111"]


def test_invalid_snapshot_is_skipped(student_factory, now) -> None:
    store = InMemoryStore([student_factory(created_at=datetime(2026, 10, 1))])

    stats = ScanEngine(store, settings=_settings()).run_cycle(now)

    assert stats["skipped_invalid"] == 1
    assert stats["errors"] == 0


def test_overlapping_cycle_is_rejected(student_factory, now) -> None:
    entered = threading.Event()
    release = threading.Event()

    class SlowGateway:
        def send(self, target, action_type, payload, timeout):
            entered.set()
            release.wait(5)
            return GatewayResult.sent("slow")

    student = student_factory(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=9),
        last_activity_at=now - timedelta(days=8),
    )
    engine = ScanEngine(InMemoryStore([student]), {Channel.WHATSAPP: SlowGateway()}, settings=_settings())
    worker = threading.Thread(target=engine.run_cycle, args=(now,))
    worker.start()
    try:
        assert entered.wait(5)
        assert engine.running
        with pytest.raises(ScanAlreadyRunningError):
            engine.run_cycle(now)
    finally:
        release.set()
        worker.join(5)
    assert not engine.running


def test_cancel_stops_remaining_students(student_factory, now) -> None:
    holder = {}

    class CancellingGateway:
        def __init__(self) -> None:
            self.calls = 0

        def send(self, target, action_type, payload, timeout):
            self.calls += 1
            holder["engine"].cancel()
            return GatewayResult.sent(f"wamid.{self.calls}")

    quiet = dict(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=9),
        last_activity_at=now - timedelta(days=8),
    )
    store = InMemoryStore([student_factory(f"s{i}", **quiet) for i in range(5)])
    gateway = CancellingGateway()
    settings = EngineSettings(
        engine=EngineConfig(max_workers=1),
        dispatch=DispatchConfig(rate_limit_per_minute=0),
    )
    engine = ScanEngine(store, {Channel.WHATSAPP: gateway}, settings=settings)
    holder["engine"] = engine

    stats = engine.run_cycle(now)

    assert gateway.calls == 1
    assert stats.cancelled
    assert stats["students_scanned"] == 1


def test_stale_pending_attempt_is_recovered(student_factory, now) -> None:
    stale = open_attempt(_candidate(ActionType.DOCUMENT_REMINDER), now - timedelta(hours=2))
    store = InMemoryStore([student_factory()], ledger=[stale])

    stats = ScanEngine(store, settings=_settings()).run_cycle(now)

    recovered = store.ledger_entries_for("s1")[0]
    assert stats["stale_recovered"] == 1
    assert recovered.status is LedgerStatus.FAILED
    assert recovered.failure_reason == "timeout"
    assert recovered.retry_at == now + timedelta(minutes=1)


def test_retries_for_deleted_students_are_cancelled(student_factory, now) -> None:
    entry = open_attempt(_candidate(ActionType.WHATSAPP_FOLLOWUP), now - timedelta(minutes=30))
    failed = entry.transition(status=LedgerStatus.FAILED, failure_reason="timeout", retry_at=now - timedelta(minutes=29))
    store = InMemoryStore([student_factory(status=LifecycleStatus.DELETED)], ledger=[entry, failed])

    stats = ScanEngine(store, settings=_settings()).run_cycle(now)

    assert stats["retries_cancelled"] == 1
    assert stats["students_scanned"] == 0
    assert store.ledger_entries_for("s1")[0].status is LedgerStatus.CANCELLED


def test_run_for_student(student_factory, gateway_factory, now) -> None:
    quiet = dict(
        status=LifecycleStatus.INQUIRY_SUBMITTED,
        created_at=now - timedelta(days=9),
        last_activity_at=now - timedelta(days=8),
    )
    store = InMemoryStore([student_factory("a", **quiet), student_factory("b", **quiet)])
    whatsapp = gateway_factory()
    engine = ScanEngine(store, {Channel.WHATSAPP: whatsapp}, settings=_settings())

    stats = engine.run_for_student("b", now)

    assert stats["sent"] == 1
    assert store.ledger_entries_for("a") == []
    assert store.get_student("a").version == 0


def test_merge_retries_attaches_to_matching_candidate(now) -> None:
    retry = open_attempt(_candidate(ActionType.VOICE_RETRY), now).transition(
        status=LedgerStatus.FAILED, failure_reason="busy", retry_at=now
    )
    chat = open_attempt(_candidate(ActionType.WELCOME_MESSAGE), now).transition(
        status=LedgerStatus.FAILED, failure_reason="timeout", retry_at=now
    )
    candidates = [
        InterventionCandidate("s1", ActionType.COUNSELOR_ESCALATION, 1, "dropout", Channel.COUNSELOR),
        InterventionCandidate("s1", ActionType.VOICE_RETRY, 2, "no answer", Channel.VOICE),
    ]

    planned = merge_retries(candidates, [retry, chat])

    assert [(c.action_type, r) for c, r in planned] == [
        (ActionType.COUNSELOR_ESCALATION, None),
        (ActionType.VOICE_RETRY, retry),
        (ActionType.WELCOME_MESSAGE, chat),
    ]
    assert planned[2][0].reason == "Retry of attempt 1 (timeout)"


def test_merge_retries_caps_the_merged_plan(now) -> None:
    retry = open_attempt(_candidate(ActionType.WHATSAPP_FOLLOWUP), now).transition(
        status=LedgerStatus.FAILED, failure_reason="timeout", retry_at=now
    )
    candidates = [
        InterventionCandidate("s1", ActionType.COUNSELOR_ESCALATION, 1, "dropout", Channel.COUNSELOR),
        InterventionCandidate("s1", ActionType.IMMEDIATE_VOICE_CALL, 1, "high risk", Channel.VOICE),
        InterventionCandidate("s1", ActionType.DOCUMENT_REMINDER, 2, "documents", Channel.WHATSAPP),
    ]

    planned = merge_retries(candidates, [retry], limit=3)

    assert [c.action_type for c, _ in planned] == [
        ActionType.COUNSELOR_ESCALATION,
        ActionType.IMMEDIATE_VOICE_CALL,
        ActionType.DOCUMENT_REMINDER,
    ]
    assert len(merge_retries(candidates[:1], [retry], limit=3)) == 2


def test_due_retry_counts_toward_action_cap(student_factory, gateway_factory, now) -> None:
    student = student_factory(
        status=LifecycleStatus.DOCUMENTS_PENDING,
        created_at=now - timedelta(days=12),
        last_activity_at=now - timedelta(days=10),
    )
    yesterday = now - timedelta(days=1)
    bounced = open_attempt(_candidate(ActionType.WELCOME_MESSAGE), yesterday).transition(
        status=LedgerStatus.FAILED, failure_reason="invalid_number", resolved_at=yesterday
    )
    timed_out = open_attempt(_candidate(ActionType.WHATSAPP_FOLLOWUP), yesterday).transition(
        status=LedgerStatus.FAILED,
        failure_reason="timeout",
        resolved_at=yesterday,
        retry_at=yesterday + timedelta(minutes=1),
    )
    store = InMemoryStore([student], ledger=[bounced, timed_out])
    voice = gateway_factory()
    whatsapp = gateway_factory()
    counselor = gateway_factory()
    engine = ScanEngine(
        store,
        {Channel.VOICE: voice, Channel.WHATSAPP: whatsapp, Channel.COUNSELOR: counselor},
        settings=_settings(),
    )

    stats = engine.run_cycle(now)

    assert store.get_student("s1").risk_score == 60
    assert [c["action_type"] for c in counselor.calls] == [ActionType.COUNSELOR_ESCALATION]
    assert [c["action_type"] for c in voice.calls] == [ActionType.IMMEDIATE_VOICE_CALL]
    assert [c["action_type"] for c in whatsapp.calls] == [ActionType.DOCUMENT_REMINDER]
    assert stats["dispatched"] == 3
    # the retry that missed the cut is picked up next cycle
    assert store.pending_ledger_entries_due_before(now) == [timed_out]


def test_from_config_falls_back_to_configured_templates(now) -> None:
    cfg = {
        "content": {
            "provider": "ollama",
            "institution_name": "Northfield College",
            "upload_link": "https://apply.example.edu",
        }
    }

    engine = ScanEngine.from_config(cfg, InMemoryStore(), clock=lambda: now)

    assert engine.orchestrator.fallback_content.institution_name == "Northfield College"
    assert engine.orchestrator.fallback_content.upload_link == "https://apply.example.edu"
    assert engine.orchestrator.content.fallback.institution_name == "Northfield College"


def test_unreachable_store_aborts_the_cycle(student_factory, now) -> None:
    class DownStore(InMemoryStore):
        def __init__(self, students) -> None:
            super().__init__(students)
            self.reads = 0

        def ledger_entries_for(self, student_id):
            self.reads += 1
            raise StoreUnavailableError("connection refused")

    store = DownStore([student_factory(f"s{i}") for i in range(40)])
    settings = EngineSettings(
        engine=EngineConfig(max_workers=1),
        dispatch=DispatchConfig(rate_limit_per_minute=0),
    )
    engine = ScanEngine(store, settings=settings)

    with pytest.raises(StoreUnavailableError):
        engine.run_cycle(now)
    assert not engine.running
    assert store.reads == 1
    assert sum(s.version for s in store.list_active_students()) == 1
