"""Dispatch one allowed intervention: ledger first, then the gateway, then the result handler."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from admitpulse.channels.gateways import ChannelGateway, GatewayResult
from admitpulse.config import DispatchConfig
from admitpulse.content.templates import ContentGenerator, TemplateContentGenerator
from admitpulse.dispatch.backoff import FailureReason
from admitpulse.dispatch.events import DispatchResult
from admitpulse.dispatch.handler import DispatchResultHandler
from admitpulse.dispatch.ledger import LedgerEntry, LedgerStatus, NotificationLedger, open_attempt
from admitpulse.dispatch.rate_limit import DispatchRateLimiter
from admitpulse.errors import DuplicatePendingError
from admitpulse.store.base import Store
from admitpulse.students.types import Channel, InterventionCandidate, Student

logger = logging.getLogger(__name__)

SKIP_CANCELLED = "cancelled"
SKIP_IN_FLIGHT = "already in flight"


@dataclass(frozen=True)
class DispatchOutcome:
    entry: Optional[LedgerEntry] = None
    student: Optional[Student] = None
    skipped: str = ""

    @property
    def dispatched(self) -> bool:
        return self.entry is not None and not self.skipped

    @property
    def sent(self) -> bool:
        return self.dispatched and self.entry.status is LedgerStatus.SENT

    @property
    def failed(self) -> bool:
        return self.dispatched and self.entry.status in (LedgerStatus.FAILED, LedgerStatus.EXHAUSTED)

    @property
    def retry_scheduled(self) -> bool:
        return self.failed and self.entry.retry_at is not None

    @property
    def exhausted(self) -> bool:
        return self.dispatched and self.entry.status is LedgerStatus.EXHAUSTED


def dispatch_target(student: Student, channel: Channel) -> str:
    if channel is Channel.COUNSELOR:
        return student.student_id
    return student.phone


class DispatchOrchestrator:
    """Runs the per-attempt state machine up to the gateway response."""

    def __init__(
        self,
        store: Store,
        gateways: Mapping[Channel, ChannelGateway],
        handler: DispatchResultHandler,
        content: ContentGenerator | None = None,
        rate_limiter: DispatchRateLimiter | None = None,
        config: DispatchConfig | None = None,
        fallback_content: TemplateContentGenerator | None = None,
    ) -> None:
        self.store = store
        self.ledger = NotificationLedger(store)
        self.gateways = dict(gateways)
        self.handler = handler
        self.config = config or DispatchConfig()
        self.fallback_content = fallback_content or TemplateContentGenerator()
        self.content = content or self.fallback_content
        self.rate_limiter = rate_limiter or DispatchRateLimiter(self.config.rate_limit_per_minute)

    def dispatch(
        self,
        student: Student,
        candidate: InterventionCandidate,
        now: datetime,
        retry_of: LedgerEntry | None = None,
        cancel_event: threading.Event | None = None,
    ) -> DispatchOutcome:
        if not self.rate_limiter.acquire(cancel_event):
            return DispatchOutcome(skipped=SKIP_CANCELLED)

        gateway = self.gateways.get(candidate.channel)
        payload = self._payload(student, candidate)
        attempt_number = retry_of.attempt_number + 1 if retry_of is not None else 1
        entry = open_attempt(candidate, now, attempt_number)
        try:
            self.ledger.record(entry)
        except DuplicatePendingError:
            logger.info(
                "Skipping %s for student %s: attempt already pending", candidate.action_type.value, student.student_id
            )
            return DispatchOutcome(skipped=SKIP_IN_FLIGHT)

        result = self._send(gateway, student, candidate, payload)
        handled = self.handler.handle(DispatchResult(entry=entry, result=result, at=now))
        return DispatchOutcome(entry=handled.entry, student=handled.student)

    def _payload(self, student: Student, candidate: InterventionCandidate) -> Dict[str, Any]:
        payload: Dict[str, Any]
        try:
            payload = self.content.generate(student, candidate.action_type)
        except Exception as exc:
            logger.warning("Content unavailable for student %s, using template: %s", student.student_id, exc)
            payload = self.fallback_content.generate(student, candidate.action_type)
        return {**payload, "reason": candidate.reason}

    def _send(
        self,
        gateway: ChannelGateway | None,
        student: Student,
        candidate: InterventionCandidate,
        payload: Dict[str, Any],
    ) -> GatewayResult:
        if gateway is None:
            return GatewayResult.failed(
                FailureReason.NOT_CONFIGURED, f"no gateway configured for channel {candidate.channel.value}"
            )
        target = dispatch_target(student, candidate.channel)
        try:
            return gateway.send(target, candidate.action_type, payload, self.config.gateway_timeout_seconds)
        except Exception as exc:
            logger.exception(
                "Gateway %s raised for student %s", candidate.channel.value, student.student_id
            )
            return GatewayResult.failed(FailureReason.PROVIDER_ERROR, f"{type(exc).__name__}: {exc}")
