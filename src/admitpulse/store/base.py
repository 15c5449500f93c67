"""Store contract consumed by the engine."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Mapping, Optional, Protocol

from admitpulse.dispatch.ledger import LedgerEntry
from admitpulse.students.types import ActionType, Student


class Store(Protocol):
    """Durable owner of students and ledger entries.

    Student writes are conditioned on ``expected_version`` and raise
    ``VersionConflictError`` when it is stale. Ledger appends enforce at most
    one pending attempt per (student, action) and raise
    ``DuplicatePendingError`` otherwise.
    """

    def list_active_students(self) -> List[Student]:
        ...

    def get_student(self, student_id: str) -> Student:
        ...

    def update_student(self, student_id: str, patch: Mapping[str, Any], expected_version: int) -> Student:
        ...

    def append_ledger_entry(self, entry: LedgerEntry) -> None:
        ...

    def pending_ledger_entries_due_before(self, timestamp: datetime) -> List[LedgerEntry]:
        """Pending attempts created before ``timestamp`` and failed attempts whose retry is due."""
        ...

    def find_in_flight(self, student_id: str, action_type: ActionType) -> Optional[LedgerEntry]:
        ...

    def ledger_entries_for(self, student_id: str) -> List[LedgerEntry]:
        ...

    def ledger_entries(self) -> List[LedgerEntry]:
        ...

    def find_ledger_entry_by_external_id(self, external_id: str) -> Optional[LedgerEntry]:
        ...

    def record_dispatch(
        self,
        entry: LedgerEntry,
        student_id: str,
        patch: Mapping[str, Any],
        expected_version: int,
    ) -> Student:
        """Append ``entry`` and apply ``patch`` together, or neither."""
        ...
