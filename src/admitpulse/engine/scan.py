"""One scan cycle: score, recommend, gate and dispatch for every active student."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from admitpulse.channels.gateways import ChannelGateway, build_gateways
from admitpulse.config import EngineSettings
from admitpulse.content.generator_llm import build_content_generator
from admitpulse.content.templates import ContentGenerator, TemplateContentGenerator
from admitpulse.dispatch.backoff import RetryPolicy
from admitpulse.dispatch.handler import DispatchResultHandler
from admitpulse.dispatch.ledger import LedgerEntry, NotificationLedger
from admitpulse.dispatch.orchestrator import SKIP_CANCELLED, DispatchOrchestrator
from admitpulse.dispatch.rate_limit import DispatchRateLimiter
from admitpulse.eligibility.gate import EligibilityGate
from admitpulse.engine.clock import Clock, as_utc, utc_now
from admitpulse.engine.stats import RunStats
from admitpulse.errors import (
    InvalidStudentError,
    ScanAlreadyRunningError,
    StoreUnavailableError,
    VersionConflictError,
)
from admitpulse.interventions.playbook import PRIORITY_FOLLOWUP, InterventionPolicy, PriorOutcomes
from admitpulse.risk.scoring import RiskScorer, risk_patch
from admitpulse.store.base import Store
from admitpulse.students.types import Channel, InterventionCandidate, Student

logger = logging.getLogger(__name__)

Planned = Tuple[InterventionCandidate, Optional[LedgerEntry]]


def merge_retries(
    candidates: List[InterventionCandidate], retries: List[LedgerEntry], limit: int | None = None
) -> List[Planned]:
    """Attach due retries to matching candidates; unmatched retries become their own candidates.

    The merged plan is sorted by priority and cut to ``limit``. A retry that misses the cut
    writes nothing, so it stays due for the next cycle.
    """
    by_action = {entry.action_type: entry for entry in sorted(retries, key=lambda e: e.created_at)}
    planned: List[Planned] = [(c, by_action.pop(c.action_type, None)) for c in candidates]
    for action, entry in by_action.items():
        candidate = InterventionCandidate(
            student_id=entry.student_id,
            action_type=action,
            priority=PRIORITY_FOLLOWUP,
            reason=f"Retry of attempt {entry.attempt_number} ({entry.failure_reason or 'failed'})",
            channel=entry.channel,
        )
        planned.append((candidate, entry))
    planned.sort(key=lambda item: item[0].priority)
    return planned if limit is None else planned[:limit]


class ScanEngine:
    """Runs scan cycles; at most one cycle at a time per engine instance.

    The cycle lock is in-process. Separate engines sharing one store are not
    coordinated, so run a single engine (or a single scheduler) per store.
    """

    def __init__(
        self,
        store: Store,
        gateways: Mapping[Channel, ChannelGateway] | None = None,
        settings: EngineSettings | None = None,
        content: ContentGenerator | None = None,
        clock: Clock = utc_now,
        rate_limiter: DispatchRateLimiter | None = None,
        templates: TemplateContentGenerator | None = None,
    ) -> None:
        self.store = store
        self.ledger = NotificationLedger(store)
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.scorer = RiskScorer()
        self.policy = InterventionPolicy(self.settings.engine.max_actions_per_student)
        self.gate = EligibilityGate(store, self.settings.eligibility)
        self.handler = DispatchResultHandler(
            store,
            RetryPolicy(self.settings.retry),
            conflict_retries=self.settings.dispatch.conflict_retries,
        )
        self.orchestrator = DispatchOrchestrator(
            store,
            gateways or {},
            self.handler,
            content=content,
            rate_limiter=rate_limiter,
            config=self.settings.dispatch,
            fallback_content=templates,
        )
        self._cycle_lock = threading.Lock()
        self._cancel = threading.Event()

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], store: Store, clock: Clock = utc_now) -> "ScanEngine":
        return cls(
            store,
            gateways=build_gateways(cfg),
            settings=EngineSettings.from_config(cfg),
            content=build_content_generator(cfg),
            templates=TemplateContentGenerator.from_config(cfg),
            clock=clock,
        )

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    def cancel(self) -> None:
        """Stop the running cycle: no new students or dispatches are started."""
        self._cancel.set()

    def run_cycle(self, now: datetime | None = None) -> RunStats:
        if not self._cycle_lock.acquire(blocking=False):
            raise ScanAlreadyRunningError("a scan cycle is already running")
        try:
            self._cancel.clear()
            now = as_utc(now or self.clock())
            stats = RunStats(started_at=now)
            logger.info("Scan cycle started at %s", now.isoformat())
            try:
                self._recover_stale(now, stats)
                students = self.store.list_active_students()
                retries = self._due_retries(now, {s.student_id for s in students}, stats)
                self._fan_out(students, retries, now, stats)
            finally:
                stats.cancelled = self._cancel.is_set()
                stats.finished_at = self.clock()
            logger.info(
                "Scan cycle finished: %d students, %d dispatched (%d sent, %d failed), %d denied, %d errors%s",
                stats["students_scanned"],
                stats["dispatched"],
                stats["sent"],
                stats["failed"],
                stats["denied"],
                stats["errors"],
                " (cancelled)" if stats.cancelled else "",
            )
            return stats
        finally:
            self._cycle_lock.release()

    def run_for_student(self, student_id: str, now: datetime | None = None) -> RunStats:
        """Score and dispatch for one student outside the periodic schedule."""
        if not self._cycle_lock.acquire(blocking=False):
            raise ScanAlreadyRunningError("a scan cycle is already running")
        try:
            self._cancel.clear()
            now = as_utc(now or self.clock())
            stats = RunStats(started_at=now)
            student = self.store.get_student(student_id)
            due = [
                e
                for e in self.ledger.pending_due_before(now)
                if e.student_id == student.student_id and not e.is_pending
            ]
            if not student.is_active:
                for entry in due:
                    self.handler.cancel(entry, now, "student no longer active")
                    stats.incr("retries_cancelled")
            else:
                self._guarded(student, due, now, stats)
            stats.finished_at = self.clock()
            return stats
        finally:
            self._cycle_lock.release()

    # Cycle steps

    def _recover_stale(self, now: datetime, stats: RunStats) -> None:
        cutoff = now - timedelta(minutes=self.settings.dispatch.stale_pending_grace_minutes)
        for entry in self.ledger.pending_due_before(cutoff):
            if not entry.is_pending:
                continue
            updated = self.handler.expire_stale(entry, now)
            stats.incr("stale_recovered")
            logger.warning(
                "Recovered stale pending attempt %s (%s / student %s) as %s",
                entry.attempt_id,
                entry.action_type.value,
                entry.student_id,
                updated.status.value,
            )

    def _due_retries(self, now: datetime, active_ids: set, stats: RunStats) -> Dict[str, List[LedgerEntry]]:
        retries: Dict[str, List[LedgerEntry]] = defaultdict(list)
        for entry in self.ledger.pending_due_before(now):
            if entry.is_pending:
                continue
            if entry.student_id not in active_ids:
                self.handler.cancel(entry, now, "student no longer active")
                stats.incr("retries_cancelled")
                continue
            retries[entry.student_id].append(entry)
        return retries

    def _fan_out(
        self,
        students: List[Student],
        retries: Dict[str, List[LedgerEntry]],
        now: datetime,
        stats: RunStats,
    ) -> None:
        if not students:
            return
        workers = min(self.settings.engine.max_workers, len(students))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scan") as executor:
            futures = {
                executor.submit(self._guarded, s, retries.get(s.student_id, []), now, stats): s.student_id
                for s in students
            }
            for future in as_completed(futures):
                if self._cancel.is_set():
                    for pending in futures:
                        pending.cancel()
                if future.cancelled():
                    continue
                try:
                    future.result()
                except StoreUnavailableError:
                    self._cancel.set()
                    for pending in futures:
                        pending.cancel()
                    raise

    def _guarded(self, student: Student, retries: List[LedgerEntry], now: datetime, stats: RunStats) -> None:
        """Bulkhead: one student's failure never fails the cycle; an unreachable store does."""
        if self._cancel.is_set():
            return
        try:
            self._process_student(student, retries, now, stats)
        except VersionConflictError as exc:
            stats.incr("conflicts")
            logger.info("Student %s changed during the scan, retrying next cycle: %s", student.student_id, exc)
        except StoreUnavailableError:
            self._cancel.set()
            raise
        except Exception:
            stats.incr("errors")
            logger.exception("Scan failed for student %s", student.student_id)

    def _process_student(self, student: Student, retries: List[LedgerEntry], now: datetime, stats: RunStats) -> None:
        stats.incr("students_scanned")
        try:
            assessment = self.scorer.score(student, now)
        except InvalidStudentError as exc:
            stats.incr("skipped_invalid")
            logger.warning("Skipping student %s: %s", student.student_id, exc)
            return
        stats.incr("assessed")
        stats.record_level(assessment.level.value)
        student = self.store.update_student(student.student_id, risk_patch(assessment), student.version)

        history = self.ledger.history(student.student_id)
        candidates = self.policy.recommend(student, assessment, PriorOutcomes.from_history(history))
        planned = merge_retries(candidates, retries, self.settings.engine.max_actions_per_student)
        stats.incr("candidates", len(planned))

        for candidate, retry_of in planned:
            if self._cancel.is_set():
                return
            decision = self.gate.allow(student, candidate, now, history)
            if not decision.allowed:
                stats.record_denial(decision.reason)
                logger.debug(
                    "Denied %s for student %s: %s", candidate.action_type.value, student.student_id, decision.reason
                )
                continue
            stats.incr("allowed")
            outcome = self.orchestrator.dispatch(student, candidate, now, retry_of=retry_of, cancel_event=self._cancel)
            if outcome.skipped == SKIP_CANCELLED:
                return
            if outcome.skipped:
                stats.record_denial(outcome.skipped)
                continue
            self._count(outcome, stats)
            if outcome.student is not None:
                student = outcome.student
            history = history + [outcome.entry]

    @staticmethod
    def _count(outcome, stats: RunStats) -> None:
        stats.incr("dispatched")
        if outcome.sent:
            stats.incr("sent")
        elif outcome.failed:
            stats.incr("failed")
        if outcome.retry_scheduled:
            stats.incr("retries_scheduled")
        if outcome.exhausted:
            stats.incr("exhausted")
