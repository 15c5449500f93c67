"""Run one scan cycle over the students and ledger CSV snapshots."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from admitpulse.config import DEFAULT_CONFIG_PATH, configure_logging, load_config, resolve_path
from admitpulse.engine.scan import ScanEngine
from admitpulse.store.files import load_store, save_store, snapshot_paths


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Score every active student and dispatch interventions once.")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to config YAML.")
    parser.add_argument("--students", type=Path, default=None, help="Students CSV (overrides paths.students_csv).")
    parser.add_argument("--ledger", type=Path, default=None, help="Ledger CSV (overrides paths.ledger_csv).")
    parser.add_argument("--no-save", action="store_true", help="Do not write the updated snapshots back.")
    parser.add_argument("--stats-out", type=Path, default=None, help="Write run statistics JSON to this path.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    try:
        cfg = load_config(args.config)
    except FileNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)
    configure_logging(cfg)

    students_path, ledger_path = snapshot_paths(cfg)
    if args.students:
        students_path = resolve_path(args.students)
    if args.ledger:
        ledger_path = resolve_path(args.ledger)

    store = load_store(students_path, ledger_path)
    engine = ScanEngine.from_config(cfg, store)
    stats = engine.run_cycle()

    if not args.no_save:
        save_store(store, students_path, ledger_path)
        print(f"Wrote {students_path}")
        print(f"Wrote {ledger_path}")

    summary = stats.to_dict()
    if args.stats_out:
        out_path = resolve_path(args.stats_out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        print(f"Wrote {out_path}")

    print(
        f"Scanned {summary['students_scanned']} students: "
        f"{summary['dispatched']} dispatched ({summary['sent']} sent, {summary['failed']} failed), "
        f"{summary['denied']} denied, {summary['errors']} errors."
    )
    for reason, count in sorted(summary["denied_by_reason"].items()):
        print(f"  denied {count:>4}  {reason}")


if __name__ == "__main__":
    main()
