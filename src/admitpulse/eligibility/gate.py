"""Contact eligibility rules applied to every candidate action before dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Iterable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from admitpulse.config import EligibilityConfig
from admitpulse.dispatch.ledger import LedgerEntry
from admitpulse.store.base import Store
from admitpulse.students.types import ActionType, InterventionCandidate, Student, is_voice_action

logger = logging.getLogger(__name__)

RULE_OPT_OUT = "opt_out"
RULE_DAILY_CAP = "daily_cap"
RULE_COOLDOWN = "cooldown"
RULE_QUIET_HOURS = "quiet_hours"
RULE_IN_FLIGHT = "in_flight"
RULE_BACKOFF = "backoff"

# Escalations go to counselors, not to the student, so contact limits do not apply.
UNCAPPED_ACTIONS = frozenset({ActionType.COUNSELOR_ESCALATION})


@dataclass(frozen=True)
class EligibilityDecision:
    allowed: bool
    reason: str = ""
    rule: str = ""


ALLOWED = EligibilityDecision(allowed=True, reason="eligible")


def student_zone(student: Student, default: str = "UTC") -> tzinfo:
    for name in (student.timezone, default):
        if not name:
            continue
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone %r for student %s", name, student.student_id)
    return ZoneInfo("UTC")


def local_day_start(now: datetime, zone: tzinfo) -> datetime:
    local = now.astimezone(zone)
    return local.replace(hour=0, minute=0, second=0, microsecond=0)


def contacts_today(history: Iterable[LedgerEntry], now: datetime, zone: tzinfo) -> int:
    """Contact attempts created since local midnight, escalations excluded."""
    day_start = local_day_start(now, zone)
    return sum(
        1
        for entry in history
        if entry.action_type not in UNCAPPED_ACTIONS and day_start <= entry.created_at.astimezone(zone) <= now
    )


class EligibilityGate:
    """First failing rule wins; only the in-flight rule reads from the store."""

    def __init__(self, store: Store, config: EligibilityConfig | None = None) -> None:
        self.store = store
        self.config = config or EligibilityConfig()

    def allow(
        self,
        student: Student,
        candidate: InterventionCandidate,
        now: datetime,
        history: Iterable[LedgerEntry] = (),
    ) -> EligibilityDecision:
        history = list(history)
        zone = student_zone(student, self.config.default_timezone)
        action = candidate.action_type

        if candidate.channel in student.opted_out_channels:
            return EligibilityDecision(False, f"opted out of {candidate.channel.value}", RULE_OPT_OUT)

        if action not in UNCAPPED_ACTIONS and contacts_today(history, now, zone) >= self.config.daily_contact_cap:
            return EligibilityDecision(False, "daily limit reached", RULE_DAILY_CAP)

        voice = is_voice_action(action)
        if voice and student.last_contact_at is not None:
            cooldown = timedelta(hours=self.config.voice_cooldown_hours)
            if now - student.last_contact_at < cooldown:
                return EligibilityDecision(False, "cooldown active", RULE_COOLDOWN)

        if voice and not self.within_calling_hours(now, zone):
            return EligibilityDecision(False, "quiet hours", RULE_QUIET_HOURS)

        if self.store.find_in_flight(student.student_id, action) is not None:
            return EligibilityDecision(False, "already in flight", RULE_IN_FLIGHT)

        if self._backoff_active(history, action, now):
            return EligibilityDecision(False, "retry backoff active", RULE_BACKOFF)

        return ALLOWED

    def within_calling_hours(self, now: datetime, zone: tzinfo) -> bool:
        hour = now.astimezone(zone).hour
        return self.config.quiet_hours_start <= hour < self.config.quiet_hours_end

    @staticmethod
    def _backoff_active(history: list, action: ActionType, now: datetime) -> bool:
        latest: Optional[LedgerEntry] = None
        for entry in history:
            if entry.action_type is action and (latest is None or entry.created_at >= latest.created_at):
                latest = entry
        return latest is not None and latest.retry_at is not None and latest.retry_at > now
