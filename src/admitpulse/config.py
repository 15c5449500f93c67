"""Configuration loading and typed settings for each engine component."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional

import yaml

from admitpulse.students.types import ActionType

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_CONFIG_PATH = Path("configs") / "config.yaml"

DEFAULT_RETRYABLE_REASONS = frozenset({"timeout", "no_answer", "busy", "rate_limited"})
DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def resolve_path(path: Path | str) -> Path:
    path = Path(path)
    if path.is_absolute():
        return path
    return PROJECT_ROOT / path


def load_config(path: Path | str = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    cfg_path = resolve_path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        cfg = yaml.safe_load(handle) or {}
    if not isinstance(cfg, dict):
        raise ValueError("Configuration must be a mapping.")
    return cfg


def configure_logging(cfg: Mapping[str, Any] | None = None) -> None:
    log_cfg = (cfg or {}).get("logging") or {}
    level = str(log_cfg.get("level", "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ValueError(f"Unknown logging level: {level}")
    logging.basicConfig(level=level, format=log_cfg.get("format", DEFAULT_LOG_FORMAT))


def _section(cfg: Mapping[str, Any] | None, name: str) -> Dict[str, Any]:
    section = (cfg or {}).get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"config['{name}'] must be a mapping.")
    return section


def _positive(value: Any, name: str, allow_zero: bool = False) -> float:
    number = float(value)
    if number < 0 or (number == 0 and not allow_zero):
        raise ValueError(f"{name} must be {'non-negative' if allow_zero else 'positive'}, got {value!r}")
    return number


@dataclass(frozen=True)
class EligibilityConfig:
    daily_contact_cap: int = 3
    voice_cooldown_hours: float = 2.0
    quiet_hours_start: int = 9
    quiet_hours_end: int = 21
    default_timezone: str = "UTC"

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "EligibilityConfig":
        section = _section(cfg, "eligibility")
        start = int(section.get("quiet_hours_start", cls.quiet_hours_start))
        end = int(section.get("quiet_hours_end", cls.quiet_hours_end))
        if not 0 <= start < end <= 24:
            raise ValueError(f"eligibility quiet hours must satisfy 0 <= start < end <= 24, got {start}..{end}")
        return cls(
            daily_contact_cap=int(_positive(section.get("daily_contact_cap", cls.daily_contact_cap), "daily_contact_cap")),
            voice_cooldown_hours=_positive(
                section.get("voice_cooldown_hours", cls.voice_cooldown_hours), "voice_cooldown_hours", allow_zero=True
            ),
            quiet_hours_start=start,
            quiet_hours_end=end,
            default_timezone=str(section.get("default_timezone", cls.default_timezone)),
        )


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 4 * 60 * 60.0
    retryable_reasons: FrozenSet[str] = DEFAULT_RETRYABLE_REASONS
    per_action: Mapping[ActionType, "RetryConfig"] = field(default_factory=dict)

    def for_action(self, action_type: ActionType | str) -> "RetryConfig":
        return self.per_action.get(ActionType(action_type), self)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "RetryConfig":
        section = _section(cfg, "retry")
        base = cls._from_section(section, cls())
        overrides = section.get("per_action") or {}
        if not isinstance(overrides, dict):
            raise ValueError("retry.per_action must be a mapping of action type to settings.")
        per_action = {
            ActionType(action): cls._from_section(values or {}, base) for action, values in overrides.items()
        }
        return cls(
            max_retries=base.max_retries,
            base_delay_seconds=base.base_delay_seconds,
            max_delay_seconds=base.max_delay_seconds,
            retryable_reasons=base.retryable_reasons,
            per_action=per_action,
        )

    @classmethod
    def _from_section(cls, section: Mapping[str, Any], defaults: "RetryConfig") -> "RetryConfig":
        reasons = section.get("retryable_reasons")
        max_retries = int(section.get("max_retries", defaults.max_retries))
        if max_retries < 0:
            raise ValueError(f"retry.max_retries must be non-negative, got {max_retries}")
        base_delay = _positive(section.get("base_delay_seconds", defaults.base_delay_seconds), "base_delay_seconds")
        max_delay = _positive(section.get("max_delay_seconds", defaults.max_delay_seconds), "max_delay_seconds")
        if max_delay < base_delay:
            raise ValueError("retry.max_delay_seconds must be >= retry.base_delay_seconds")
        return cls(
            max_retries=max_retries,
            base_delay_seconds=base_delay,
            max_delay_seconds=max_delay,
            retryable_reasons=frozenset(str(r) for r in reasons) if reasons is not None else defaults.retryable_reasons,
        )


@dataclass(frozen=True)
class DispatchConfig:
    gateway_timeout_seconds: float = 30.0
    rate_limit_per_minute: int = 60
    stale_pending_grace_minutes: float = 60.0
    conflict_retries: int = 2

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "DispatchConfig":
        section = _section(cfg, "dispatch")
        return cls(
            gateway_timeout_seconds=_positive(
                section.get("gateway_timeout_seconds", cls.gateway_timeout_seconds), "gateway_timeout_seconds"
            ),
            rate_limit_per_minute=int(
                _positive(section.get("rate_limit_per_minute", cls.rate_limit_per_minute), "rate_limit_per_minute", True)
            ),
            stale_pending_grace_minutes=_positive(
                section.get("stale_pending_grace_minutes", cls.stale_pending_grace_minutes),
                "stale_pending_grace_minutes",
            ),
            conflict_retries=int(_positive(section.get("conflict_retries", cls.conflict_retries), "conflict_retries", True)),
        )


@dataclass(frozen=True)
class EngineConfig:
    max_workers: int = 8
    max_actions_per_student: int = 3

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "EngineConfig":
        section = _section(cfg, "engine")
        policy = _section(cfg, "policy")
        return cls(
            max_workers=int(_positive(section.get("max_workers", cls.max_workers), "max_workers")),
            max_actions_per_student=int(
                _positive(
                    policy.get("max_actions_per_student", cls.max_actions_per_student), "max_actions_per_student"
                )
            ),
        )


@dataclass(frozen=True)
class SchedulerConfig:
    interval_hours: float = 2.0
    history_size: int = 100
    run_on_start: bool = False

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "SchedulerConfig":
        section = _section(cfg, "scheduler")
        return cls(
            interval_hours=_positive(section.get("interval_hours", cls.interval_hours), "interval_hours"),
            history_size=int(_positive(section.get("history_size", cls.history_size), "history_size")),
            run_on_start=bool(section.get("run_on_start", cls.run_on_start)),
        )


@dataclass(frozen=True)
class EngineSettings:
    engine: EngineConfig = field(default_factory=EngineConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    eligibility: EligibilityConfig = field(default_factory=EligibilityConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any] | None) -> "EngineSettings":
        return cls(
            engine=EngineConfig.from_config(cfg),
            scheduler=SchedulerConfig.from_config(cfg),
            eligibility=EligibilityConfig.from_config(cfg),
            retry=RetryConfig.from_config(cfg),
            dispatch=DispatchConfig.from_config(cfg),
        )


def secret_from_env(section: Mapping[str, Any], key: str) -> Optional[str]:
    """Read ``key`` from the section, or from the env var named by ``<key>_env``."""
    value = section.get(key)
    if value:
        return str(value)
    env_name = section.get(f"{key}_env")
    if env_name:
        return os.environ.get(str(env_name))
    return None
