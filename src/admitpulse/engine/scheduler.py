"""Periodic scan driver built on APScheduler, plus a manual trigger."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from admitpulse.config import SchedulerConfig
from admitpulse.engine.scan import ScanEngine
from admitpulse.engine.stats import RunStats
from admitpulse.errors import ScanAlreadyRunningError

logger = logging.getLogger(__name__)

JOB_ID = "admitpulse-scan"


class ScanScheduler:
    """Runs ``engine.run_cycle`` every ``interval_hours``; overlapping runs are skipped."""

    def __init__(self, engine: ScanEngine, config: SchedulerConfig | None = None) -> None:
        self.engine = engine
        self.config = config or SchedulerConfig()
        self.scheduler: Optional[BackgroundScheduler] = None
        self._history: Deque[RunStats] = deque(maxlen=self.config.history_size)
        self._history_lock = threading.Lock()
        self.skipped_runs = 0
        self.completed_runs = 0

    def start(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            logger.info("Scan scheduler already running")
            return
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            func=self._run_job,
            trigger=IntervalTrigger(hours=self.config.interval_hours),
            id=JOB_ID,
            name="Student risk scan",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Scan scheduler started, every %s hours", self.config.interval_hours)
        if self.config.run_on_start:
            self.run_now()

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler is None:
            return
        self.engine.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        self.scheduler = None
        logger.info("Scan scheduler stopped")

    def next_run_time(self):
        if self.scheduler is None:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def run_now(self) -> Optional[RunStats]:
        """Manual scan; returns None when a cycle is already running."""
        return self._run_job()

    def _run_job(self) -> Optional[RunStats]:
        try:
            stats = self.engine.run_cycle()
        except ScanAlreadyRunningError:
            self.skipped_runs += 1
            logger.warning("Scan skipped: previous cycle still running")
            return None
        with self._history_lock:
            self._history.append(stats)
            self.completed_runs += 1
        return stats

    @property
    def last_run(self) -> Optional[RunStats]:
        with self._history_lock:
            return self._history[-1] if self._history else None

    def history(self) -> List[RunStats]:
        with self._history_lock:
            return list(self._history)
