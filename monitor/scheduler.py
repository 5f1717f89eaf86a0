"""Background timer workers built on the schedule library."""
import logging
import threading

import schedule

logger = logging.getLogger("opsmonitor.scheduler")

MAX_CONSECUTIVE_FAILURES = 5


class PeriodicWorker:
    """Run one job on its own schedule.Scheduler in a daemon thread.

    Either `interval_seconds` (every N seconds) or `at` ("HH:MM", daily) is
    used. The loop sleeps on the shared stop event so shutdown is immediate.
    """

    def __init__(self, name, job, interval_seconds=None, at=None, stop_event=None,
                 run_immediately=False):
        if interval_seconds is None and at is None:
            raise ValueError(f"Worker {name} needs interval_seconds or at")
        self.name = name
        self.job = job
        self.interval = interval_seconds
        self.at = at
        self.stop_event = stop_event or threading.Event()
        self.run_immediately = run_immediately
        self.scheduler = schedule.Scheduler()
        self.runs = 0
        self.failures = 0
        self._consecutive_failures = 0
        self._thread = None

        if at is not None:
            self.scheduler.every().day.at(at).do(self._run_job)
        else:
            self.scheduler.every(interval_seconds).seconds.do(self._run_job)

    @property
    def tick(self):
        if self.interval is None:
            return 1.0
        return max(0.05, min(1.0, float(self.interval)))

    def start(self):
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
        self._thread.start()
        when = f"daily at {self.at}" if self.at else f"every {self.interval}s"
        logger.info(f"Worker {self.name} started ({when})")

    def join(self, timeout=5):
        if self._thread:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Worker {self.name} did not stop within {timeout}s")
            self._thread = None

    def stop(self, timeout=5):
        self.stop_event.set()
        self.join(timeout)
        self.scheduler.clear()
        logger.info(f"Worker {self.name} stopped")

    @property
    def is_alive(self):
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self):
        if self.run_immediately:
            self._run_job()
        while not self.stop_event.is_set():
            self.scheduler.run_pending()
            self.stop_event.wait(self.tick)

    def _run_job(self):
        self.runs += 1
        try:
            self.job()
            self._consecutive_failures = 0
        except Exception as e:
            self.failures += 1
            self._consecutive_failures += 1
            logger.error(f"{self.name} job failed ({self._consecutive_failures} consecutive): {e}",
                         exc_info=True)
            if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                logger.critical(f"{MAX_CONSECUTIVE_FAILURES}+ consecutive {self.name} failures!")
