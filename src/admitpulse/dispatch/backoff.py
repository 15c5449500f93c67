"""Unified retry policy: failure classification and exponential backoff."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from admitpulse.config import RetryConfig
from admitpulse.students.types import ActionType


class FailureReason:
    TIMEOUT = "timeout"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    RATE_LIMITED = "rate_limited"
    INVALID_NUMBER = "invalid_number"
    OPTED_OUT = "opted_out"
    PROVIDER_ERROR = "provider_error"
    NOT_CONFIGURED = "not_configured"


@dataclass(frozen=True)
class RetryDecision:
    retry_at: Optional[datetime]
    exhausted: bool
    retryable: bool


class RetryPolicy:
    """Decide what happens after a failed attempt.

    ``attempt_number`` starts at 1; the attempt after a failure of attempt ``n``
    waits ``base * 2 ** (n - 1)`` seconds, capped at ``max_delay_seconds``.
    """

    def __init__(self, config: RetryConfig | None = None) -> None:
        self.config = config or RetryConfig()

    def is_retryable(self, reason: str, action_type: ActionType | str | None = None) -> bool:
        cfg = self.config.for_action(action_type) if action_type else self.config
        return reason in cfg.retryable_reasons

    def backoff(self, attempt_number: int, action_type: ActionType | str | None = None) -> timedelta:
        if attempt_number < 1:
            raise ValueError(f"attempt_number starts at 1, got {attempt_number}")
        cfg = self.config.for_action(action_type) if action_type else self.config
        delay = cfg.base_delay_seconds * (2 ** (attempt_number - 1))
        return timedelta(seconds=min(delay, cfg.max_delay_seconds))

    def decide(self, reason: str, attempt_number: int, action_type: ActionType | str, now: datetime) -> RetryDecision:
        cfg = self.config.for_action(action_type)
        if reason not in cfg.retryable_reasons:
            return RetryDecision(retry_at=None, exhausted=False, retryable=False)
        retries_used = attempt_number - 1
        if retries_used >= cfg.max_retries:
            return RetryDecision(retry_at=None, exhausted=True, retryable=True)
        return RetryDecision(retry_at=now + self.backoff(attempt_number, action_type), exhausted=False, retryable=True)
