"""Notification ledger: append-only record of every dispatch attempt."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from admitpulse.students.records import normalize_id, parse_timestamp, safe_text
from admitpulse.students.types import ActionType, Channel, InterventionCandidate


class LedgerStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


TERMINAL_STATUSES = frozenset({LedgerStatus.DELIVERED, LedgerStatus.CANCELLED, LedgerStatus.EXHAUSTED})


@dataclass(frozen=True)
class LedgerEntry:
    """One revision of a dispatch attempt.

    Status changes append a new revision with the same ``attempt_id``; the
    highest revision is the current state of the attempt.
    """

    attempt_id: str
    student_id: str
    action_type: ActionType
    channel: Channel
    status: LedgerStatus
    attempt_number: int
    created_at: datetime
    resolved_at: Optional[datetime] = None
    error: str = ""
    failure_reason: str = ""
    retry_at: Optional[datetime] = None
    external_id: str = ""
    reason: str = ""
    revision: int = 0

    @property
    def key(self) -> tuple:
        return (self.student_id, self.action_type)

    @property
    def is_pending(self) -> bool:
        return self.status is LedgerStatus.PENDING

    def retry_due(self, now: datetime) -> bool:
        return self.status is LedgerStatus.FAILED and self.retry_at is not None and self.retry_at <= now

    def transition(self, **changes: Any) -> "LedgerEntry":
        return replace(self, revision=self.revision + 1, **changes)


def open_attempt(
    candidate: InterventionCandidate,
    now: datetime,
    attempt_number: int = 1,
) -> LedgerEntry:
    """Create the pending entry written before the gateway is called."""
    return LedgerEntry(
        attempt_id=uuid.uuid4().hex,
        student_id=candidate.student_id,
        action_type=candidate.action_type,
        channel=candidate.channel,
        status=LedgerStatus.PENDING,
        attempt_number=attempt_number,
        created_at=now,
        reason=candidate.reason,
    )


def latest_per_action(entries: List[LedgerEntry]) -> Dict[ActionType, LedgerEntry]:
    """Most recently created attempt for each action type."""
    latest: Dict[ActionType, LedgerEntry] = {}
    for entry in sorted(entries, key=lambda e: (e.created_at, e.attempt_number)):
        latest[entry.action_type] = entry
    return latest


def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def entry_to_record(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "attempt_id": entry.attempt_id,
        "student_id": entry.student_id,
        "action_type": entry.action_type.value,
        "channel": entry.channel.value,
        "status": entry.status.value,
        "attempt_number": entry.attempt_number,
        "created_at": _iso(entry.created_at),
        "resolved_at": _iso(entry.resolved_at),
        "error": entry.error,
        "failure_reason": entry.failure_reason,
        "retry_at": _iso(entry.retry_at),
        "external_id": entry.external_id,
        "reason": entry.reason,
        "revision": entry.revision,
    }


def entry_from_record(record: Mapping[str, Any]) -> LedgerEntry:
    created_at = parse_timestamp(record.get("created_at"), "created_at")
    if created_at is None:
        raise ValueError(f"ledger entry {record.get('attempt_id')!r} has no created_at")
    return LedgerEntry(
        attempt_id=safe_text(record.get("attempt_id")),
        student_id=normalize_id(record.get("student_id")),
        action_type=ActionType(safe_text(record.get("action_type"))),
        channel=Channel(safe_text(record.get("channel"))),
        status=LedgerStatus(safe_text(record.get("status"))),
        attempt_number=int(float(record.get("attempt_number") or 1)),
        created_at=created_at,
        resolved_at=parse_timestamp(record.get("resolved_at"), "resolved_at"),
        error=safe_text(record.get("error")),
        failure_reason=safe_text(record.get("failure_reason")),
        retry_at=parse_timestamp(record.get("retry_at"), "retry_at"),
        external_id=safe_text(record.get("external_id")),
        reason=safe_text(record.get("reason")),
        revision=int(float(record.get("revision") or 0)),
    )


class NotificationLedger:
    """Ledger read/write paths backed by the store."""

    def __init__(self, store) -> None:
        self.store = store

    def record(self, entry: LedgerEntry) -> LedgerEntry:
        self.store.append_ledger_entry(entry)
        return entry

    def pending_due_before(self, timestamp: datetime) -> List[LedgerEntry]:
        return self.store.pending_ledger_entries_due_before(timestamp)

    def in_flight(self, student_id: str, action_type: ActionType) -> Optional[LedgerEntry]:
        return self.store.find_in_flight(student_id, action_type)

    def history(self, student_id: str) -> List[LedgerEntry]:
        return self.store.ledger_entries_for(student_id)

    def current(self) -> List[LedgerEntry]:
        return self.store.ledger_entries()

    def by_external_id(self, external_id: str) -> Optional[LedgerEntry]:
        return self.store.find_ledger_entry_by_external_id(external_id)
