"""Events consumed by the dispatch result handler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from admitpulse.channels.gateways import GatewayResult
from admitpulse.dispatch.ledger import LedgerEntry
from admitpulse.students.types import LifecycleStatus


@dataclass(frozen=True)
class DispatchResult:
    """Synchronous gateway response for a pending attempt."""

    entry: LedgerEntry
    result: GatewayResult
    at: datetime


@dataclass(frozen=True)
class DeliveryReceipt:
    """Asynchronous provider callback, e.g. a delivered message or a call that ended unanswered."""

    external_id: str
    delivered: bool
    at: datetime
    reason: str = ""
    error: str = ""


@dataclass(frozen=True)
class InboundActivity:
    """The student interacted (replied, uploaded, changed status)."""

    student_id: str
    at: datetime
    status: Optional[LifecycleStatus] = None
