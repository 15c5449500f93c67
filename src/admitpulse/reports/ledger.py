"""Ledger snapshots and summaries as pandas frames."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

import pandas as pd

from admitpulse.dispatch.ledger import LedgerEntry, LedgerStatus, entry_from_record, entry_to_record

LEDGER_COLUMNS = [
    "attempt_id",
    "student_id",
    "action_type",
    "channel",
    "status",
    "attempt_number",
    "created_at",
    "resolved_at",
    "error",
    "failure_reason",
    "retry_at",
    "external_id",
    "reason",
    "revision",
]

SUCCESS_STATUSES = {LedgerStatus.SENT.value, LedgerStatus.DELIVERED.value}
SUMMARY_STATUSES = [status.value for status in LedgerStatus]


def ledger_frame(entries: Iterable[LedgerEntry]) -> pd.DataFrame:
    return pd.DataFrame([entry_to_record(e) for e in entries], columns=LEDGER_COLUMNS)


def summarize_ledger(entries: Iterable[LedgerEntry]) -> pd.DataFrame:
    """Status counts and success rate per action type and channel.

    Expects the current revision of each attempt (``store.ledger_entries()``).
    """
    df = ledger_frame(entries)
    columns = ["action_type", "channel", *SUMMARY_STATUSES, "attempts", "success_rate"]
    if df.empty:
        return pd.DataFrame(columns=columns)

    counts = pd.crosstab([df["action_type"], df["channel"]], df["status"])
    for status in SUMMARY_STATUSES:
        if status not in counts.columns:
            counts[status] = 0
    counts = counts[SUMMARY_STATUSES]
    counts["attempts"] = counts.sum(axis=1)
    succeeded = counts[sorted(SUCCESS_STATUSES)].sum(axis=1)
    counts["success_rate"] = (succeeded / counts["attempts"]).round(3)
    summary = counts.reset_index()
    summary.columns.name = None
    return summary[columns].sort_values(["action_type", "channel"]).reset_index(drop=True)


def write_ledger_csv(entries: Iterable[LedgerEntry], path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    ledger_frame(entries).to_csv(path, index=False)
    return path


def read_ledger_csv(path: Path | str) -> List[LedgerEntry]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Ledger file not found: {path}")
    df = pd.read_csv(path, dtype=str, keep_default_na=False)
    missing = [col for col in ("attempt_id", "student_id", "status", "created_at") if col not in df.columns]
    if missing:
        raise ValueError(f"Ledger file {path} is missing columns {missing}")
    return [entry_from_record(row) for row in df.to_dict(orient="records")]
