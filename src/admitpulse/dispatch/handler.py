"""Apply dispatch events to the ledger and the student record."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from admitpulse.dispatch.backoff import FailureReason, RetryPolicy
from admitpulse.dispatch.events import DeliveryReceipt, DispatchResult, InboundActivity
from admitpulse.dispatch.ledger import LedgerEntry, LedgerStatus
from admitpulse.errors import VersionConflictError
from admitpulse.store.base import Store
from admitpulse.students.types import Channel, ContactOutcome, Student

logger = logging.getLogger(__name__)

PatchFn = Callable[[Student], Dict[str, Any]]

OUTCOME_FOR_REASON = {
    FailureReason.NO_ANSWER: ContactOutcome.NO_ANSWER,
    FailureReason.BUSY: ContactOutcome.BUSY,
}


@dataclass(frozen=True)
class HandledEvent:
    entry: Optional[LedgerEntry]
    student: Optional[Student]


def _no_patch(student: Student) -> Dict[str, Any]:
    return {}


class DispatchResultHandler:
    """Single consumer of dispatch events.

    Ledger revision and student patch are committed together through
    ``store.record_dispatch``. On repeated version conflicts the ledger
    revision is still written on its own, so no attempt is lost, and the
    conflict is re-raised to abort the student for this cycle.
    """

    def __init__(self, store: Store, retry_policy: RetryPolicy | None = None, conflict_retries: int = 2) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self.conflict_retries = conflict_retries

    def handle(self, event) -> HandledEvent:
        if isinstance(event, DispatchResult):
            return self._on_dispatch_result(event)
        if isinstance(event, DeliveryReceipt):
            return self._on_receipt(event)
        if isinstance(event, InboundActivity):
            return self._on_inbound(event)
        raise TypeError(f"unsupported dispatch event: {type(event).__name__}")

    # Dispatch results

    def _on_dispatch_result(self, event: DispatchResult) -> HandledEvent:
        entry, result, now = event.entry, event.result, event.at
        if result.ok:
            updated = entry.transition(status=LedgerStatus.SENT, resolved_at=now, external_id=result.external_id)
            patch_fn = self._contact_patch(entry.channel, now, ContactOutcome.COMPLETED)
            logger.info(
                "Sent %s to student %s (attempt %d, id=%s)",
                entry.action_type.value,
                entry.student_id,
                entry.attempt_number,
                result.external_id or "-",
            )
        else:
            reason = result.reason or FailureReason.PROVIDER_ERROR
            updated = self.fail(entry, reason, result.error, now)
            outcome = OUTCOME_FOR_REASON.get(reason, ContactOutcome.FAILED)
            patch_fn = self._contact_patch(entry.channel, now, outcome, opted_out=reason == FailureReason.OPTED_OUT)
        student = self._commit(updated, entry.student_id, patch_fn)
        return HandledEvent(entry=updated, student=student)

    def fail(self, entry: LedgerEntry, reason: str, error: str, now: datetime) -> LedgerEntry:
        """Failed revision of ``entry`` with the retry decision applied (not yet written)."""
        decision = self.retry_policy.decide(reason, entry.attempt_number, entry.action_type, now)
        if decision.exhausted:
            logger.warning(
                "Retries exhausted for %s / student %s after attempt %d (%s)",
                entry.action_type.value,
                entry.student_id,
                entry.attempt_number,
                reason,
            )
            status = LedgerStatus.EXHAUSTED
        else:
            status = LedgerStatus.FAILED
            if decision.retry_at is not None:
                logger.info(
                    "Attempt %d of %s for student %s failed (%s); retry at %s",
                    entry.attempt_number,
                    entry.action_type.value,
                    entry.student_id,
                    reason,
                    decision.retry_at.isoformat(),
                )
            else:
                logger.warning(
                    "Attempt %d of %s for student %s failed permanently (%s): %s",
                    entry.attempt_number,
                    entry.action_type.value,
                    entry.student_id,
                    reason,
                    error,
                )
        return entry.transition(
            status=status,
            resolved_at=now,
            failure_reason=reason,
            error=error or reason,
            retry_at=decision.retry_at,
        )

    def _contact_patch(
        self,
        channel: Channel,
        now: datetime,
        outcome: ContactOutcome,
        opted_out: bool = False,
    ) -> PatchFn:
        if channel is Channel.COUNSELOR:
            return _no_patch

        def patch(student: Student) -> Dict[str, Any]:
            changes: Dict[str, Any] = {
                "last_contact_at": now,
                "contact_attempts": student.contact_attempts + 1,
                "last_contact_channel": channel,
                "last_contact_outcome": outcome,
            }
            if opted_out:
                changes["opted_out_channels"] = student.opted_out_channels | {channel}
            return changes

        return patch

    # Receipts and inbound activity

    def _on_receipt(self, event: DeliveryReceipt) -> HandledEvent:
        entry = self.store.find_ledger_entry_by_external_id(event.external_id)
        if entry is None:
            logger.warning("Receipt for unknown external id %s ignored", event.external_id)
            return HandledEvent(entry=None, student=None)
        if entry.status is not LedgerStatus.SENT:
            logger.debug("Receipt for attempt %s in status %s ignored", entry.attempt_id, entry.status.value)
            return HandledEvent(entry=entry, student=None)

        if event.delivered:
            updated = entry.transition(status=LedgerStatus.DELIVERED, resolved_at=event.at)
            self.store.append_ledger_entry(updated)
            return HandledEvent(entry=updated, student=None)

        reason = event.reason or FailureReason.PROVIDER_ERROR
        updated = self.fail(entry, reason, event.error, event.at)
        if entry.channel is Channel.COUNSELOR:
            patch_fn = _no_patch
        else:
            outcome = OUTCOME_FOR_REASON.get(reason, ContactOutcome.FAILED)
            opted_out = reason == FailureReason.OPTED_OUT

            def patch_fn(student: Student) -> Dict[str, Any]:
                # the attempt was already counted when it was sent
                changes: Dict[str, Any] = {"last_contact_outcome": outcome}
                if opted_out:
                    changes["opted_out_channels"] = student.opted_out_channels | {entry.channel}
                return changes

        student = self._commit(updated, entry.student_id, patch_fn)
        return HandledEvent(entry=updated, student=student)

    def _on_inbound(self, event: InboundActivity) -> HandledEvent:
        last_error: Optional[VersionConflictError] = None
        for _ in range(self.conflict_retries + 1):
            student = self.store.get_student(event.student_id)
            patch: Dict[str, Any] = {"last_activity_at": max(event.at, student.activity_reference)}
            if event.status is not None:
                patch["status"] = event.status
            try:
                return HandledEvent(entry=None, student=self.store.update_student(student.student_id, patch, student.version))
            except VersionConflictError as exc:
                last_error = exc
        raise last_error

    # Ledger-only transitions

    def expire_stale(self, entry: LedgerEntry, now: datetime) -> LedgerEntry:
        """A pending attempt never got a response; treat it as a timeout."""
        updated = self.fail(entry, FailureReason.TIMEOUT, "no gateway response recorded", now)
        self.store.append_ledger_entry(updated)
        return updated

    def cancel(self, entry: LedgerEntry, now: datetime, why: str) -> LedgerEntry:
        updated = entry.transition(status=LedgerStatus.CANCELLED, resolved_at=now, retry_at=None, error=why)
        self.store.append_ledger_entry(updated)
        logger.info("Cancelled %s for student %s: %s", entry.action_type.value, entry.student_id, why)
        return updated

    def _commit(self, entry: LedgerEntry, student_id: str, patch_fn: PatchFn) -> Student:
        last_error: Optional[VersionConflictError] = None
        for _ in range(self.conflict_retries + 1):
            student = self.store.get_student(student_id)
            try:
                return self.store.record_dispatch(entry, student_id, patch_fn(student), student.version)
            except VersionConflictError as exc:
                last_error = exc
                logger.debug("Version conflict committing attempt %s; re-reading student", entry.attempt_id)
        self.store.append_ledger_entry(entry)
        raise last_error
