"""Student, risk and intervention data structures."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class LifecycleStatus(str, Enum):
    INQUIRY_SUBMITTED = "inquiry_submitted"
    DOCUMENTS_PENDING = "documents_pending"
    APPLICATION_IN_PROGRESS = "application_in_progress"
    APPLICATION_COMPLETED = "application_completed"
    INTERVIEW_SCHEDULED = "interview_scheduled"
    ACCEPTED = "accepted"
    ENROLLED = "enrolled"
    DROPOUT_RISK = "dropout_risk"
    COUNSELOR_REQUIRED = "counselor_required"
    DELETED = "deleted"


# Statuses past the application step; the "no progress since creation" rule ignores them.
PROGRESSED_STATUSES = frozenset(
    {
        LifecycleStatus.APPLICATION_COMPLETED,
        LifecycleStatus.INTERVIEW_SCHEDULED,
        LifecycleStatus.ACCEPTED,
        LifecycleStatus.ENROLLED,
    }
)


class ContactOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    CANCELLED = "cancelled"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Channel(str, Enum):
    VOICE = "voice"
    WHATSAPP = "whatsapp"
    COUNSELOR = "counselor"


class ActionType(str, Enum):
    IMMEDIATE_VOICE_CALL = "immediate_voice_call"
    VOICE_RETRY = "voice_retry"
    WHATSAPP_FOLLOWUP = "whatsapp_followup"
    DOCUMENT_REMINDER = "document_reminder"
    WELCOME_MESSAGE = "welcome_message"
    COUNSELOR_ESCALATION = "counselor_escalation"


ACTION_CHANNELS: Dict[ActionType, Channel] = {
    ActionType.IMMEDIATE_VOICE_CALL: Channel.VOICE,
    ActionType.VOICE_RETRY: Channel.VOICE,
    ActionType.WHATSAPP_FOLLOWUP: Channel.WHATSAPP,
    ActionType.DOCUMENT_REMINDER: Channel.WHATSAPP,
    ActionType.WELCOME_MESSAGE: Channel.WHATSAPP,
    ActionType.COUNSELOR_ESCALATION: Channel.COUNSELOR,
}

VOICE_ACTIONS = frozenset(action for action, channel in ACTION_CHANNELS.items() if channel is Channel.VOICE)


def channel_for(action_type: ActionType | str) -> Channel:
    return ACTION_CHANNELS[ActionType(action_type)]


def is_voice_action(action_type: ActionType | str) -> bool:
    return ActionType(action_type) in VOICE_ACTIONS


@dataclass
class Student:
    student_id: str
    status: LifecycleStatus
    created_at: datetime
    last_activity_at: Optional[datetime] = None
    contact_attempts: int = 0
    last_contact_at: Optional[datetime] = None
    last_contact_channel: Optional[Channel] = None
    last_contact_outcome: Optional[ContactOutcome] = None
    opted_out_channels: FrozenSet[Channel] = frozenset()
    risk_level: Optional[RiskLevel] = None
    risk_score: int = 0
    risk_factors: List[str] = field(default_factory=list)
    last_assessed_at: Optional[datetime] = None
    name: str = ""
    phone: str = ""
    email: str = ""
    timezone: str = ""
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is not LifecycleStatus.DELETED

    @property
    def activity_reference(self) -> datetime:
        """Timestamp of the last inbound interaction, falling back to creation."""
        return self.last_activity_at or self.created_at

    def with_changes(self, **changes: Any) -> "Student":
        return replace(self, **changes)


@dataclass(frozen=True)
class RiskAssessment:
    score: int
    level: RiskLevel
    factors: List[str]
    days_since_activity: int
    days_since_created: int
    assessed_at: datetime


@dataclass(frozen=True)
class InterventionCandidate:
    student_id: str
    action_type: ActionType
    priority: int
    reason: str
    channel: Channel
