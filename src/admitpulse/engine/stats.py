"""Per-cycle counters shared by the scan workers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

COUNTERS = (
    "students_scanned",
    "assessed",
    "skipped_invalid",
    "conflicts",
    "errors",
    "candidates",
    "allowed",
    "denied",
    "dispatched",
    "sent",
    "failed",
    "retries_scheduled",
    "exhausted",
    "retries_cancelled",
    "stale_recovered",
)


@dataclass
class RunStats:
    started_at: datetime
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    counts: Dict[str, int] = field(default_factory=lambda: {name: 0 for name in COUNTERS})
    risk_levels: Dict[str, int] = field(default_factory=dict)
    denied_by_reason: Dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str, amount: int = 1) -> None:
        if name not in self.counts:
            raise KeyError(f"unknown counter: {name}")
        with self._lock:
            self.counts[name] += amount

    def record_level(self, level: str) -> None:
        with self._lock:
            self.risk_levels[level] = self.risk_levels.get(level, 0) + 1

    def record_denial(self, reason: str) -> None:
        with self._lock:
            self.counts["denied"] += 1
            self.denied_by_reason[reason] = self.denied_by_reason.get(reason, 0) + 1

    def __getitem__(self, name: str) -> int:
        return self.counts[name]

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "started_at": self.started_at.isoformat(),
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
                "duration_seconds": self.duration_seconds,
                "cancelled": self.cancelled,
                **self.counts,
                "risk_levels": dict(self.risk_levels),
                "denied_by_reason": dict(self.denied_by_reason),
            }
