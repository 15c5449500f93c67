from __future__ import annotations

import pytest
import requests

from admitpulse.channels import gateways
from admitpulse.channels.gateways import (
    CounselorWebhookGateway,
    GatewayResult,
    VoiceCallGateway,
    WhatsAppGateway,
    build_gateways,
    classify_status,
)
from admitpulse.students.types import ActionType, Channel


class FakeResponse:
    def __init__(self, status_code: int, data) -> None:
        self.status_code = status_code
        self._data = data

    def json(self):
        if isinstance(self._data, Exception):
            raise self._data
        return self._data


def _capture(monkeypatch, response):
    captured = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        captured.update({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(gateways.requests, "post", fake_post)
    return captured


def test_voice_call_posts_dynamic_variables(monkeypatch) -> None:
    captured = _capture(monkeypatch, FakeResponse(201, {"call_id": "call_42", "call_status": "registered"}))
    gateway = VoiceCallGateway("https://api.retellai.com/", "tok", "+15550009999", agent_id="agent_1")

    result = gateway.send("+15550001111", ActionType.IMMEDIATE_VOICE_CALL, {"student_name": "Ana", "risk_score": 70}, 30)

    assert result == GatewayResult.sent("call_42")
    assert captured["url"] == "https://api.retellai.com/v2/create-phone-call"
    assert captured["headers"]["Authorization"] == "Bearer tok"
    assert captured["timeout"] == 30
    body = captured["json"]
    assert body["to_number"] == "+15550001111"
    assert body["override_agent_id"] == "agent_1"
    assert body["retell_llm_dynamic_variables"] == {"student_name": "Ana", "risk_score": "70"}


@pytest.mark.parametrize(
    ("call_status", "reason"),
    [("no_answer", "no_answer"), ("busy", "busy"), ("error", "provider_error")],
)
def test_voice_call_status_failures(monkeypatch, call_status, reason) -> None:
    _capture(monkeypatch, FakeResponse(200, {"call_id": "call_1", "call_status": call_status}))

    result = VoiceCallGateway("https://voice", None, "+1").send("+15550001111", ActionType.VOICE_RETRY, {}, 5)

    assert not result.ok
    assert result.reason == reason


def test_voice_call_without_phone_is_invalid_number(monkeypatch) -> None:
    captured = _capture(monkeypatch, FakeResponse(200, {}))

    result = VoiceCallGateway("https://voice", None, "+1").send("", ActionType.VOICE_RETRY, {}, 5)

    assert result.reason == "invalid_number"
    assert captured == {}


def test_whatsapp_message_returns_message_id(monkeypatch) -> None:
    captured = _capture(monkeypatch, FakeResponse(200, {"messages": [{"id": "wamid.ABC"}]}))
    gateway = WhatsAppGateway("https://graph.facebook.com/v18.0", "12345", "tok")

    result = gateway.send("+15550001111", ActionType.WHATSAPP_FOLLOWUP, {"text": "Hi Ana"}, 10)

    assert result.external_id == "wamid.ABC"
    assert captured["url"] == "https://graph.facebook.com/v18.0/12345/messages"
    assert captured["json"]["to"] == "15550001111"
    assert captured["json"]["text"] == {"body": "Hi Ana"}


def test_whatsapp_empty_text_is_not_sent(monkeypatch) -> None:
    captured = _capture(monkeypatch, FakeResponse(200, {}))

    result = WhatsAppGateway("https://graph", "1", None).send("+1555", ActionType.WELCOME_MESSAGE, {"text": "  "}, 10)

    assert result.reason == "provider_error"
    assert captured == {}


@pytest.mark.parametrize(
    ("code", "reason"),
    [(131026, "invalid_number"), (131050, "opted_out"), (130429, "rate_limited"), (100, "invalid_number")],
)
def test_whatsapp_error_codes(monkeypatch, code, reason) -> None:
    _capture(monkeypatch, FakeResponse(400, {"error": {"code": code, "message": "rejected"}}))

    result = WhatsAppGateway("https://graph", "1", "tok").send("+1555", ActionType.DOCUMENT_REMINDER, {"text": "x"}, 10)

    assert result.reason == reason
    assert result.error == "rejected"


def test_whatsapp_response_without_id_fails(monkeypatch) -> None:
    _capture(monkeypatch, FakeResponse(200, {"messages": []}))

    result = WhatsAppGateway("https://graph", "1", "tok").send("+1555", ActionType.DOCUMENT_REMINDER, {"text": "x"}, 10)

    assert result.reason == "provider_error"


def test_counselor_webhook_posts_escalation(monkeypatch) -> None:
    captured = _capture(monkeypatch, FakeResponse(200, {"ticket_id": "T-9"}))

    result = CounselorWebhookGateway("https://hooks.example.org/").send(
        "s1", ActionType.COUNSELOR_ESCALATION, {"risk_score": 85}, 15
    )

    assert result.external_id == "T-9"
    assert captured["url"] == "https://hooks.example.org/counselor-escalation"
    assert "Authorization" not in captured["headers"]
    assert captured["json"]["data"] == {"studentId": "s1", "actionType": "counselor_escalation", "risk_score": 85}


def test_counselor_webhook_accepts_non_json_body(monkeypatch) -> None:
    _capture(monkeypatch, FakeResponse(200, ValueError("not json")))

    result = CounselorWebhookGateway("https://hooks").send("s1", ActionType.COUNSELOR_ESCALATION, {}, 15)

    assert result.ok
    assert result.external_id == ""


@pytest.mark.parametrize(
    ("error", "reason"),
    [
        (requests.Timeout("read timed out"), "timeout"),
        (requests.ConnectionError("refused"), "timeout"),
        (requests.TooManyRedirects("loop"), "provider_error"),
    ],
)
def test_transport_errors_are_classified(monkeypatch, error, reason) -> None:
    _capture(monkeypatch, error)

    result = CounselorWebhookGateway("https://hooks").send("s1", ActionType.COUNSELOR_ESCALATION, {}, 15)

    assert result.reason == reason


def test_http_status_classification() -> None:
    assert classify_status(429) == "rate_limited"
    assert classify_status(503) == "timeout"
    assert classify_status(404) == "invalid_number"
    assert classify_status(500) == "provider_error"


def test_build_gateways_only_for_configured_channels(monkeypatch) -> None:
    monkeypatch.setenv("WA_TOKEN", "secret")
    cfg = {
        "channels": {
            "voice": {"endpoint": "", "from_number": "+1"},
            "whatsapp": {"phone_number_id": "777", "api_token_env": "WA_TOKEN"},
            "counselor": {"webhook_url": "https://hooks"},
        }
    }

    built = build_gateways(cfg)

    assert set(built) == {Channel.WHATSAPP, Channel.COUNSELOR}
    assert built[Channel.WHATSAPP].api_token == "secret"
    assert built[Channel.WHATSAPP].endpoint == "https://graph.facebook.com/v18.0"
    assert build_gateways(None) == {}
