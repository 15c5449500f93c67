"""Score and dispatch for a single student."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from admitpulse.config import DEFAULT_CONFIG_PATH, configure_logging, load_config
from admitpulse.dispatch.ledger import entry_to_record
from admitpulse.engine.scan import ScanEngine
from admitpulse.errors import StudentNotFoundError
from admitpulse.store.files import load_store, save_store, snapshot_paths
from admitpulse.students.records import normalize_id, student_to_record


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the risk scan for one student.")
    parser.add_argument("--student_id", required=True, help="Student identifier.")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to config YAML.")
    parser.add_argument("--no-save", action="store_true", help="Do not write the updated snapshots back.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    cfg = load_config(args.config)
    configure_logging(cfg)

    students_path, ledger_path = snapshot_paths(cfg)
    store = load_store(students_path, ledger_path)
    engine = ScanEngine.from_config(cfg, store)
    student_id = normalize_id(args.student_id)
    try:
        stats = engine.run_for_student(student_id)
    except StudentNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    if not args.no_save:
        save_store(store, students_path, ledger_path)

    student = store.get_student(student_id)
    output = {
        "student": student_to_record(student),
        "ledger": [entry_to_record(e) for e in store.ledger_entries_for(student_id)],
        "stats": stats.to_dict(),
    }
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
