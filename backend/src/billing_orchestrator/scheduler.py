from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta

from .errors import JobAlreadyRunningError, StoreError
from .jobs import JobRunner, JobRunSummary
from .store import _now_utc

logger = logging.getLogger(__name__)


class BillingScheduler:
    """Drives one named job on a fixed interval from a daemon thread."""

    def __init__(self, *, runner: JobRunner, job_name: str, interval_seconds: int) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._runner = runner
        self._job_name = job_name
        self._interval = timedelta(seconds=interval_seconds)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_run_at: datetime | None = None

    @property
    def next_run_at(self) -> datetime | None:
        return self._next_run_at

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._next_run_at = _now_utc() + self._interval
        self._thread = threading.Thread(target=self._loop, name=f"scheduler-{self._job_name}", daemon=True)
        self._thread.start()
        logger.info("scheduler for %s started, first run at %s", self._job_name, self._next_run_at.isoformat())

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        self._next_run_at = None

    def tick(self) -> JobRunSummary | None:
        try:
            return self._runner.run(self._job_name)
        except JobAlreadyRunningError as exc:
            logger.info("scheduled %s skipped: run %s still in progress", self._job_name, exc.running_run_id)
        except StoreError as exc:
            logger.error("scheduled %s failed on store error, retrying next interval: %s", self._job_name, exc)
        except Exception:  # noqa: BLE001
            logger.exception("scheduled %s failed", self._job_name)
        return None

    def _loop(self) -> None:
        while not self._stop.wait(self._interval.total_seconds()):
            self.tick()
            self._next_run_at = _now_utc() + self._interval
