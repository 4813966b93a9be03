"""
Recurring trigger for the scheduled-verification sweep
"""

import logging
import threading
from typing import Optional

import schedule

logger = logging.getLogger(__name__)


class SweepScheduler:
    """Runs the engine's sweep once a day on a background thread

    Owns its own schedule.Scheduler so several instances (and tests) never
    share jobs through the library's module-level default scheduler.
    """

    def __init__(self, engine, at_time: str = "02:00", poll_seconds: float = 60):
        self.engine = engine
        self.at_time = at_time
        self.poll_seconds = poll_seconds
        self.scheduler = schedule.Scheduler()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_now(self, now=None):
        """Run one sweep synchronously"""
        logger.info("Running scheduled death verification check...")
        try:
            report = self.engine.sweep_resolve(now)
        except Exception:
            logger.exception("Error in scheduled death verification check")
            return None
        if report.failed:
            logger.error(f"Scheduled death verification check left {len(report.failed)} "
                         f"verifications unresolved: {report.failed}")
        else:
            logger.info("Scheduled death verification check completed")
        return report

    def start(self):
        if self.is_running:
            logger.warning("Sweep scheduler already running")
            return
        self.scheduler.clear()
        self.scheduler.every().day.at(self.at_time).do(self.run_now)
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="afternote-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Sweep scheduler started, daily run at {self.at_time}")

    def stop(self, timeout: float = 10):
        if not self.is_running:
            return
        self._stop.set()
        self._thread.join(timeout)
        self.scheduler.clear()
        self._thread = None
        logger.info("Sweep scheduler stopped")

    def _loop(self):
        while not self._stop.is_set():
            self.scheduler.run_pending()
            self._stop.wait(self.poll_seconds)

    def next_run(self):
        return self.scheduler.next_run
