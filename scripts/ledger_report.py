"""Summarise the notification ledger snapshot per action and channel."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from admitpulse.config import DEFAULT_CONFIG_PATH, load_config, resolve_path
from admitpulse.reports.ledger import read_ledger_csv, summarize_ledger
from admitpulse.store.files import snapshot_paths
from admitpulse.store.memory import InMemoryStore


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Summarise the ledger CSV snapshot.")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to config YAML.")
    parser.add_argument("--ledger", type=Path, default=None, help="Ledger CSV (overrides paths.ledger_csv).")
    parser.add_argument("--out", type=Path, default=None, help="Optional CSV path for the summary table.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    cfg = load_config(args.config)
    _, ledger_path = snapshot_paths(cfg)
    if args.ledger:
        ledger_path = resolve_path(args.ledger)
    if not ledger_path.exists():
        print(f"Ledger not found: {ledger_path}", file=sys.stderr)
        sys.exit(1)

    store = InMemoryStore(ledger=read_ledger_csv(ledger_path))
    summary = summarize_ledger(store.ledger_entries())
    if summary.empty:
        print("Ledger is empty.")
        return

    print(summary.to_string(index=False))
    print(f"\nAttempt status totals: {store.counts()}")
    if args.out:
        out_path = resolve_path(args.out)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        summary.to_csv(out_path, index=False)
        print(f"Wrote {out_path}")


if __name__ == "__main__":
    main()
