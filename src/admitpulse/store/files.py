"""CSV snapshots of an in-memory store, used by the CLI scripts between runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Tuple

from admitpulse.config import resolve_path
from admitpulse.reports.ledger import read_ledger_csv, write_ledger_csv
from admitpulse.store.memory import InMemoryStore
from admitpulse.students.records import load_students_csv, write_students_csv

logger = logging.getLogger(__name__)

DEFAULT_STUDENTS_PATH = Path("data") / "students_sample.csv"
DEFAULT_LEDGER_PATH = Path("reports") / "ledger.csv"


def snapshot_paths(cfg: Mapping[str, Any] | None) -> Tuple[Path, Path]:
    paths_cfg = (cfg or {}).get("paths") or {}
    students = resolve_path(paths_cfg.get("students_csv") or DEFAULT_STUDENTS_PATH)
    ledger = resolve_path(paths_cfg.get("ledger_csv") or DEFAULT_LEDGER_PATH)
    return students, ledger


def load_store(students_path: Path, ledger_path: Path) -> InMemoryStore:
    """Students CSV is required; a missing ledger CSV means an empty ledger."""
    store = InMemoryStore(load_students_csv(students_path))
    if ledger_path.exists():
        store.load_ledger(read_ledger_csv(ledger_path))
    else:
        logger.info("No ledger snapshot at %s; starting with an empty ledger", ledger_path)
    return store


def save_store(store: InMemoryStore, students_path: Path, ledger_path: Path) -> None:
    write_students_csv(store.all_students(), students_path)
    write_ledger_csv(store.ledger_revisions(), ledger_path)
