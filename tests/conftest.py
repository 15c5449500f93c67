"""Shared fixtures: a fixed clock, student factory and scripted gateways."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping

import pytest

from admitpulse.channels.gateways import GatewayResult
from admitpulse.students.types import ActionType, LifecycleStatus, Student

# Thursday 14:00 UTC, inside calling hours for UTC students.
NOW = datetime(2026, 10, 15, 14, 0, tzinfo=timezone.utc)


def make_student(student_id: str = "s1", now: datetime = NOW, **overrides: Any) -> Student:
    values: Dict[str, Any] = {
        "student_id": student_id,
        "status": LifecycleStatus.APPLICATION_IN_PROGRESS,
        "created_at": now - timedelta(days=2),
        "last_activity_at": now - timedelta(hours=6),
        "name": "Test Student",
        "phone": "+15550001111",
        "timezone": "UTC",
    }
    values.update(overrides)
    return Student(**values)


class ScriptedGateway:
    """Returns queued results in order, repeating the last one."""

    def __init__(self, *results: GatewayResult) -> None:
        self.results: List[GatewayResult] = list(results) or [GatewayResult.sent("ext-1")]
        self.calls: List[Dict[str, Any]] = []

    def send(self, target: str, action_type: ActionType, payload: Mapping[str, Any], timeout: float) -> GatewayResult:
        self.calls.append({"target": target, "action_type": action_type, "payload": dict(payload), "timeout": timeout})
        index = min(len(self.calls) - 1, len(self.results) - 1)
        return self.results[index]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def student_factory():
    return make_student


@pytest.fixture
def gateway_factory():
    return ScriptedGateway
