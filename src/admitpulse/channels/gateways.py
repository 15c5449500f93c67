"""Channel gateways: place voice calls, send WhatsApp messages, raise counselor escalations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol

import requests
from requests import RequestException

from admitpulse.config import secret_from_env
from admitpulse.students.types import ActionType, Channel

SENT = "sent"
FAILED = "failed"

# Subset of WhatsApp Cloud API error codes worth classifying.
WHATSAPP_ERROR_REASONS = {
    131026: "invalid_number",
    131050: "opted_out",
    130429: "rate_limited",
    131056: "rate_limited",
}


@dataclass(frozen=True)
class GatewayResult:
    outcome: str
    external_id: str = ""
    reason: str = ""
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome == SENT

    @classmethod
    def sent(cls, external_id: str = "") -> "GatewayResult":
        return cls(outcome=SENT, external_id=external_id)

    @classmethod
    def failed(cls, reason: str, error: str = "") -> "GatewayResult":
        return cls(outcome=FAILED, reason=reason, error=error or reason)


class ChannelGateway(Protocol):
    def send(self, target: str, action_type: ActionType, payload: Mapping[str, Any], timeout: float) -> GatewayResult:
        """Deliver one action to ``target`` within ``timeout`` seconds."""
        ...


def classify_status(status_code: int) -> str:
    if status_code == 429:
        return "rate_limited"
    if status_code in (502, 503, 504):
        return "timeout"
    if status_code in (400, 404, 422):
        return "invalid_number"
    return "provider_error"


def _post(url: str, body: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Dict[str, Any] | GatewayResult:
    """POST JSON; return the decoded body or a classified failure."""
    try:
        response = requests.post(url, json=body, headers=headers, timeout=timeout)
    except requests.Timeout as exc:
        return GatewayResult.failed("timeout", f"request to {url} timed out: {exc}")
    except requests.ConnectionError as exc:
        return GatewayResult.failed("timeout", f"cannot reach {url}: {exc}")
    except RequestException as exc:
        return GatewayResult.failed("provider_error", str(exc))

    try:
        data = response.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict):
        data = {}

    if response.status_code >= 400:
        return _http_failure(response.status_code, data)
    return data


def _http_failure(status_code: int, data: Dict[str, Any]) -> GatewayResult:
    error = data.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message") or f"HTTP {status_code}")
        if code in WHATSAPP_ERROR_REASONS:
            return GatewayResult.failed(WHATSAPP_ERROR_REASONS[code], message)
        return GatewayResult.failed(classify_status(status_code), message)
    message = str(error or data.get("message") or f"HTTP {status_code}")
    return GatewayResult.failed(classify_status(status_code), message)


def _bearer(token: str | None) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


@dataclass
class VoiceCallGateway:
    """Outbound AI voice calls through a Retell-style phone call API."""

    endpoint: str
    api_token: str | None
    from_number: str
    agent_id: str = ""

    def send(self, target: str, action_type: ActionType, payload: Mapping[str, Any], timeout: float) -> GatewayResult:
        if not target:
            return GatewayResult.failed("invalid_number", "student has no phone number")
        body: Dict[str, Any] = {
            "from_number": self.from_number,
            "to_number": target,
            "metadata": {"action_type": ActionType(action_type).value},
            "retell_llm_dynamic_variables": {k: str(v) for k, v in payload.items()},
        }
        if self.agent_id:
            body["override_agent_id"] = self.agent_id
        url = f"{self.endpoint.rstrip('/')}/v2/create-phone-call"
        data = _post(url, body, _bearer(self.api_token), timeout)
        if isinstance(data, GatewayResult):
            return data
        call_id = data.get("call_id")
        if not call_id:
            return GatewayResult.failed("provider_error", "voice API response has no call_id")
        status = str(data.get("call_status") or "")
        if status in ("error", "no_answer", "busy"):
            reason = status if status != "error" else "provider_error"
            return GatewayResult.failed(reason, str(data.get("disconnection_reason") or status))
        return GatewayResult.sent(str(call_id))


@dataclass
class WhatsAppGateway:
    """Text messages through the WhatsApp Cloud API."""

    endpoint: str
    phone_number_id: str
    api_token: str | None

    def send(self, target: str, action_type: ActionType, payload: Mapping[str, Any], timeout: float) -> GatewayResult:
        if not target:
            return GatewayResult.failed("invalid_number", "student has no phone number")
        text = str(payload.get("text") or "").strip()
        if not text:
            return GatewayResult.failed("provider_error", f"empty message body for {ActionType(action_type).value}")
        body = {
            "messaging_product": "whatsapp",
            "to": target.lstrip("+"),
            "type": "text",
            "text": {"body": text},
        }
        url = f"{self.endpoint.rstrip('/')}/{self.phone_number_id}/messages"
        data = _post(url, body, _bearer(self.api_token), timeout)
        if isinstance(data, GatewayResult):
            return data
        try:
            return GatewayResult.sent(str(data["messages"][0]["id"]))
        except (KeyError, IndexError, TypeError):
            return GatewayResult.failed("provider_error", "WhatsApp response has no message id")


@dataclass
class CounselorWebhookGateway:
    """Hand a student to the counselor team through a workflow webhook."""

    webhook_url: str
    api_token: str | None = None

    def send(self, target: str, action_type: ActionType, payload: Mapping[str, Any], timeout: float) -> GatewayResult:
        body = {
            "event": "counselor_escalation",
            "data": {"studentId": target, "actionType": ActionType(action_type).value, **dict(payload)},
        }
        url = f"{self.webhook_url.rstrip('/')}/counselor-escalation"
        data = _post(url, body, _bearer(self.api_token), timeout)
        if isinstance(data, GatewayResult):
            return data
        return GatewayResult.sent(str(data.get("id") or data.get("ticket_id") or ""))


def build_gateways(cfg: Mapping[str, Any] | None) -> Dict[Channel, ChannelGateway]:
    """Gateways for every channel configured under ``channels``."""
    channels_cfg = (cfg or {}).get("channels") or {}
    gateways: Dict[Channel, ChannelGateway] = {}

    voice_cfg = channels_cfg.get("voice") or {}
    if voice_cfg.get("endpoint"):
        gateways[Channel.VOICE] = VoiceCallGateway(
            endpoint=voice_cfg["endpoint"],
            api_token=secret_from_env(voice_cfg, "api_token"),
            from_number=str(voice_cfg.get("from_number", "")),
            agent_id=str(voice_cfg.get("agent_id", "")),
        )

    whatsapp_cfg = channels_cfg.get("whatsapp") or {}
    if whatsapp_cfg.get("phone_number_id"):
        gateways[Channel.WHATSAPP] = WhatsAppGateway(
            endpoint=whatsapp_cfg.get("endpoint", "https://graph.facebook.com/v18.0"),
            phone_number_id=str(whatsapp_cfg["phone_number_id"]),
            api_token=secret_from_env(whatsapp_cfg, "api_token"),
        )

    counselor_cfg = channels_cfg.get("counselor") or {}
    if counselor_cfg.get("webhook_url"):
        gateways[Channel.COUNSELOR] = CounselorWebhookGateway(
            webhook_url=counselor_cfg["webhook_url"],
            api_token=secret_from_env(counselor_cfg, "api_token"),
        )
    return gateways
