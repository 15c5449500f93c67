"""Static message templates used when no content generator is configured or it fails."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol

from admitpulse.students.types import ActionType, Student

TEMPLATES = {
    ActionType.WELCOME_MESSAGE: (
        "Hi {student_name}! Thank you for your interest in {institution_name}. "
        "We're excited to help you with your admission process. How can we assist you today?"
    ),
    ActionType.WHATSAPP_FOLLOWUP: (
        "Hi {student_name}, I wanted to follow up on your application to {institution_name}. "
        "Our records show you started the process {days_ago} days ago. "
        "Do you need any help completing your application?"
    ),
    ActionType.DOCUMENT_REMINDER: (
        "Hi {student_name}, just a friendly reminder that we're still missing some documents "
        "for your application. You can upload them here: {upload_link}"
    ),
    ActionType.IMMEDIATE_VOICE_CALL: (
        "Call {student_name} about their application to {institution_name}. "
        "Ask whether anything is blocking them and offer help with the next step."
    ),
    ActionType.VOICE_RETRY: (
        "Follow-up call to {student_name}; the last attempt was {last_outcome}. "
        "Keep it short and offer a callback time that suits them."
    ),
    ActionType.COUNSELOR_ESCALATION: (
        "Student {student_name} ({student_id}) needs a counselor. "
        "Status: {status}. Risk: {risk_level} ({risk_score}). Factors: {risk_factors}."
    ),
}


class ContentGenerator(Protocol):
    def generate(self, student: Student, action_type: ActionType) -> Dict[str, Any]:
        """Build the gateway payload for one action."""
        ...


def template_variables(student: Student, institution_name: str, upload_link: str) -> Dict[str, str]:
    days_ago = ""
    if student.last_assessed_at is not None:
        days_ago = str(max(0, (student.last_assessed_at - student.created_at).days))
    return {
        "student_id": student.student_id,
        "student_name": student.name or "there",
        "institution_name": institution_name,
        "upload_link": upload_link,
        "days_ago": days_ago or "a few",
        "status": student.status.value,
        "risk_level": student.risk_level.value if student.risk_level else "unknown",
        "risk_score": str(student.risk_score),
        "risk_factors": "; ".join(student.risk_factors) or "none recorded",
        "last_outcome": student.last_contact_outcome.value if student.last_contact_outcome else "unknown",
    }


@dataclass
class TemplateContentGenerator:
    institution_name: str = "our institution"
    upload_link: str = ""

    def generate(self, student: Student, action_type: ActionType) -> Dict[str, Any]:
        action_type = ActionType(action_type)
        variables = template_variables(student, self.institution_name, self.upload_link)
        text = TEMPLATES[action_type].format(**variables)
        payload: Dict[str, Any] = {"text": text, "student_name": variables["student_name"], "source": "template"}
        if action_type is ActionType.COUNSELOR_ESCALATION:
            payload["risk_score"] = student.risk_score
            payload["risk_factors"] = list(student.risk_factors)
            payload["status"] = student.status.value
        return payload

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "TemplateContentGenerator":
        content_cfg = (cfg or {}).get("content") or {}
        return cls(
            institution_name=str(content_cfg.get("institution_name", cls.institution_name)),
            upload_link=str(content_cfg.get("upload_link", cls.upload_link)),
        )
