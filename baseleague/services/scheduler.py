"""Cron-driven settlement passes with a single-flight guard."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from ..core.config import DEFAULT_SCHEDULE
from ..domain.models import RunSummary
from .settlement import SettlementOrchestrator

logger = logging.getLogger(__name__)

JOB_ID = "settlement_pass"


class SettlementScheduler:
    """
    Runs `SettlementOrchestrator.run_once` on a cron schedule.

    At most one pass runs at a time: a trigger that fires while a pass is in
    flight is skipped and logged, not queued. `shutdown()` raises the stop
    token so the in-flight pass ends after its current fixture.
    """

    def __init__(
        self,
        orchestrator: SettlementOrchestrator,
        schedule: str = DEFAULT_SCHEDULE,
        *,
        run_on_startup: bool = False,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.orchestrator = orchestrator
        self.schedule = schedule
        self.run_on_startup = run_on_startup
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._lock = threading.Lock()
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def run_pending(self) -> Optional[RunSummary]:
        """One guarded pass; returns None when another pass holds the guard."""
        if not self._lock.acquire(blocking=False):
            logger.info("Settlement pass already running, skipping trigger")
            return None
        try:
            if self._stop.is_set():
                return None
            return self.orchestrator.run_once(stop=self._stop)
        except Exception:
            logger.exception("Settlement pass crashed")
            return None
        finally:
            self._lock.release()

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already started, skipping duplicate initialization")
            return
        self._stop.clear()
        self._scheduler.add_job(
            self.run_pending,
            trigger=CronTrigger.from_crontab(self.schedule, timezone="UTC"),
            id=JOB_ID,
            name="Settle fixtures with unsettled wagers",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        if self.run_on_startup:
            # no trigger: fires once, immediately
            self._scheduler.add_job(self.run_pending, id=f"{JOB_ID}_startup", replace_existing=True)
        self._scheduler.start()
        logger.info("Settlement scheduler started (schedule=%r, run_on_startup=%s)", self.schedule, self.run_on_startup)

    def shutdown(self, wait: bool = True) -> None:
        self._stop.set()
        if self.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Settlement scheduler stopped")
