"""Thread-safe in-memory store used by the CLI scripts and tests."""

from __future__ import annotations

import threading
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from admitpulse.dispatch.ledger import LedgerEntry
from admitpulse.errors import DuplicatePendingError, StudentNotFoundError, VersionConflictError
from admitpulse.students.types import ActionType, LifecycleStatus, Student

STUDENT_FIELDS = {f.name for f in fields(Student)}
IMMUTABLE_FIELDS = {"student_id", "version", "created_at"}


def _copy(student: Student) -> Student:
    return replace(student, risk_factors=list(student.risk_factors))


class InMemoryStore:
    """Students keyed by id plus an append-only list of ledger revisions."""

    def __init__(self, students: Iterable[Student] = (), ledger: Iterable[LedgerEntry] = ()) -> None:
        self._lock = threading.RLock()
        self._students: Dict[str, Student] = {}
        self._revisions: List[LedgerEntry] = []
        self._current: Dict[str, LedgerEntry] = {}
        for student in students:
            self.add_student(student)
        self.load_ledger(ledger)

    # Students

    def add_student(self, student: Student) -> Student:
        with self._lock:
            self._students[student.student_id] = student
            return student

    def list_active_students(self) -> List[Student]:
        with self._lock:
            active = [s for s in self._students.values() if s.status is not LifecycleStatus.DELETED]
            return [_copy(s) for s in sorted(active, key=lambda s: s.student_id)]

    def all_students(self) -> List[Student]:
        """Every student including soft-deleted ones, for snapshots."""
        with self._lock:
            return [_copy(s) for s in sorted(self._students.values(), key=lambda s: s.student_id)]

    def get_student(self, student_id: str) -> Student:
        with self._lock:
            student = self._students.get(student_id)
            if student is None:
                raise StudentNotFoundError(student_id)
            return _copy(student)

    def update_student(self, student_id: str, patch: Mapping[str, Any], expected_version: int) -> Student:
        with self._lock:
            current = self._checked(student_id, expected_version)
            updated = self._apply_patch(current, patch)
            self._students[student_id] = updated
            return _copy(updated)

    def _checked(self, student_id: str, expected_version: int) -> Student:
        current = self._students.get(student_id)
        if current is None:
            raise StudentNotFoundError(student_id)
        if current.version != expected_version:
            raise VersionConflictError(student_id, expected_version, current.version)
        return current

    @staticmethod
    def _apply_patch(current: Student, patch: Mapping[str, Any]) -> Student:
        unknown = set(patch) - STUDENT_FIELDS
        if unknown:
            raise ValueError(f"unknown student fields in patch: {sorted(unknown)}")
        frozen = set(patch) & IMMUTABLE_FIELDS
        if frozen:
            raise ValueError(f"student fields cannot be patched: {sorted(frozen)}")
        changes = dict(patch)
        new_activity = changes.get("last_activity_at")
        if new_activity is not None and current.last_activity_at is not None and new_activity < current.last_activity_at:
            # last_activity_at never moves backwards
            changes["last_activity_at"] = current.last_activity_at
        return replace(current, version=current.version + 1, **changes)

    # Ledger

    def append_ledger_entry(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._append(entry)

    def _append(self, entry: LedgerEntry) -> None:
        previous = self._current.get(entry.attempt_id)
        if previous is not None and entry.revision <= previous.revision:
            raise ValueError(
                f"attempt {entry.attempt_id}: revision {entry.revision} does not follow {previous.revision}"
            )
        if entry.is_pending:
            clash = self._pending_for(entry.student_id, entry.action_type)
            if clash is not None and clash.attempt_id != entry.attempt_id:
                raise DuplicatePendingError(entry.student_id, entry.action_type.value)
        self._revisions.append(entry)
        self._current[entry.attempt_id] = entry

    def _pending_for(self, student_id: str, action_type: ActionType) -> Optional[LedgerEntry]:
        for entry in self._current.values():
            if entry.is_pending and entry.student_id == student_id and entry.action_type is action_type:
                return entry
        return None

    def _superseded(self, entry: LedgerEntry) -> bool:
        return any(
            other.key == entry.key and other.created_at > entry.created_at and other.attempt_id != entry.attempt_id
            for other in self._current.values()
        )

    def pending_ledger_entries_due_before(self, timestamp: datetime) -> List[LedgerEntry]:
        with self._lock:
            due = []
            for entry in self._current.values():
                if entry.is_pending and entry.created_at < timestamp:
                    due.append(entry)
                elif entry.retry_due(timestamp) and not self._superseded(entry):
                    due.append(entry)
            return sorted(due, key=lambda e: (e.created_at, e.student_id))

    def find_in_flight(self, student_id: str, action_type: ActionType) -> Optional[LedgerEntry]:
        with self._lock:
            return self._pending_for(student_id, ActionType(action_type))

    def ledger_entries_for(self, student_id: str) -> List[LedgerEntry]:
        with self._lock:
            entries = [e for e in self._current.values() if e.student_id == student_id]
            return sorted(entries, key=lambda e: (e.created_at, e.attempt_number))

    def ledger_entries(self) -> List[LedgerEntry]:
        with self._lock:
            return sorted(self._current.values(), key=lambda e: (e.created_at, e.student_id))

    def ledger_revisions(self) -> List[LedgerEntry]:
        """Every revision ever appended, in append order."""
        with self._lock:
            return list(self._revisions)

    def find_ledger_entry_by_external_id(self, external_id: str) -> Optional[LedgerEntry]:
        if not external_id:
            return None
        with self._lock:
            for entry in self._current.values():
                if entry.external_id == external_id:
                    return entry
            return None

    def record_dispatch(
        self,
        entry: LedgerEntry,
        student_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> Student:
        with self._lock:
            current = self._checked(student_id, expected_version)
            updated = self._apply_patch(current, patch) if patch else current
            self._append(entry)
            self._students[student_id] = updated
            return _copy(updated)

    def load_ledger(self, entries: Iterable[LedgerEntry]) -> None:
        """Replay ledger revisions, e.g. from a CSV snapshot after a restart."""
        with self._lock:
            for entry in sorted(entries, key=lambda e: (e.created_at, e.revision)):
                previous = self._current.get(entry.attempt_id)
                if previous is not None and entry.revision <= previous.revision:
                    continue
                self._revisions.append(entry)
                self._current[entry.attempt_id] = entry

    def counts(self) -> Dict[str, int]:
        with self._lock:
            by_status: Dict[str, int] = {}
            for entry in self._current.values():
                by_status[entry.status.value] = by_status.get(entry.status.value, 0) + 1
            return by_status
