"""Run the periodic scan until interrupted, saving snapshots after every cycle."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from admitpulse.config import DEFAULT_CONFIG_PATH, SchedulerConfig, configure_logging, load_config
from admitpulse.engine.scan import ScanEngine
from admitpulse.engine.scheduler import ScanScheduler
from admitpulse.store.files import load_store, save_store, snapshot_paths

logger = logging.getLogger("run_scheduler")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run scan cycles on an interval.")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to config YAML.")
    parser.add_argument("--interval_hours", type=float, default=None, help="Override scheduler.interval_hours.")
    parser.add_argument("--run_now", action="store_true", help="Run one cycle immediately on start.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    cfg = load_config(args.config)
    configure_logging(cfg)

    scheduler_cfg = cfg.setdefault("scheduler", {})
    if args.interval_hours is not None:
        scheduler_cfg["interval_hours"] = args.interval_hours

    students_path, ledger_path = snapshot_paths(cfg)
    store = load_store(students_path, ledger_path)
    engine = ScanEngine.from_config(cfg, store)
    scheduler = ScanScheduler(engine, SchedulerConfig.from_config(cfg))

    scheduler.start()
    if args.run_now:
        scheduler.run_now()
    saved_runs = 0
    try:
        while True:
            time.sleep(5)
            runs = scheduler.completed_runs
            if runs != saved_runs:
                save_store(store, students_path, ledger_path)
                saved_runs = runs
                logger.info("Snapshots saved after run %d", runs)
    except (KeyboardInterrupt, SystemExit):
        print("Stopping scheduler...")
    finally:
        scheduler.shutdown()
        save_store(store, students_path, ledger_path)
        print(f"Completed {scheduler.completed_runs} runs; skipped {scheduler.skipped_runs}.")


if __name__ == "__main__":
    main()
