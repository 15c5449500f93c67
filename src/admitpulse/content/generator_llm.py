"""LLM-backed content generator with strict parsing and template fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from admitpulse.content.templates import ContentGenerator, TemplateContentGenerator
from admitpulse.llm.clients import BaseLLMClient, build_llm_client
from admitpulse.students.types import ActionType, Student, is_voice_action

logger = logging.getLogger(__name__)

MESSAGE_MARKER = "MESSAGE:"

ACTION_BRIEFS = {
    ActionType.WELCOME_MESSAGE: "welcome a student who just submitted an inquiry",
    ActionType.WHATSAPP_FOLLOWUP: "follow up with a student whose application has stalled",
    ActionType.DOCUMENT_REMINDER: "remind a student to upload missing application documents",
    ActionType.IMMEDIATE_VOICE_CALL: "open a phone call with a student at high risk of dropping out",
    ActionType.VOICE_RETRY: "open a follow-up call after an unanswered or failed call",
}


def _build_prompt(student: Student, action_type: ActionType, institution_name: str) -> str:
    kind = "call opening script" if is_voice_action(action_type) else "WhatsApp message"
    factors = "; ".join(student.risk_factors) or "none"
    return (
        "Write one section exactly in this format:\n"
        f"{MESSAGE_MARKER}\n"
        f"<one {kind}, 30-80 words, warm tone, no pressure, no mention of risk scores>\n\n"
        f"Goal: {ACTION_BRIEFS[action_type]}.\n"
        "Inputs:\n"
        f"- student_name: {student.name or 'unknown'}\n"
        f"- institution: {institution_name}\n"
        f"- status: {student.status.value}\n"
        f"- risk_factors: {factors}\n"
        "Output exactly the section as specified."
    )


def _parse_response(text: str) -> str | None:
    if not text:
        return None
    lower = text.lower()
    index = lower.find(MESSAGE_MARKER.lower())
    if index < 0:
        return None
    message = text[index + len(MESSAGE_MARKER):].strip()
    return message or None


@dataclass
class LLMContentGenerator:
    client: BaseLLMClient
    fallback: TemplateContentGenerator

    def generate(self, student: Student, action_type: ActionType) -> Dict[str, Any]:
        action_type = ActionType(action_type)
        payload = self.fallback.generate(student, action_type)
        # escalations carry structured data for counselors; no prose needed
        if action_type not in ACTION_BRIEFS:
            return payload
        prompt = _build_prompt(student, action_type, self.fallback.institution_name)
        try:
            text = _parse_response(self.client.generate(prompt))
            if not text:
                raise ValueError("LLM output could not be parsed.")
        except Exception as exc:
            logger.warning(
                "Content generation failed for %s / student %s, using template: %s",
                action_type.value,
                student.student_id,
                exc,
            )
            return payload
        return {**payload, "text": text, "source": "llm"}


def build_content_generator(cfg: Mapping[str, Any] | None) -> ContentGenerator:
    content_cfg = (cfg or {}).get("content") or {}
    templates = TemplateContentGenerator.from_config(cfg)
    provider = content_cfg.get("provider", "template")
    if provider in (None, "", "template"):
        return templates
    return LLMContentGenerator(client=build_llm_client(content_cfg), fallback=templates)
