from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from croniter import croniter

from ..errors import InvalidTriggerConfig, NotFound

logger = logging.getLogger(__name__)


@dataclass
class CronJob:
    id: int
    expression: str
    callback: Callable[[], None]
    next_run: datetime


class CronScheduler:
    """Runs callbacks on cron ticks from a single timer thread.

    Jobs can be added before ``start``; they only fire once the thread runs.
    Callbacks execute on the timer thread and must return quickly.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._jobs: dict[int, CronJob] = {}
        self._ids = itertools.count(1)
        self._wakeup = threading.Condition()
        self._thread: threading.Thread | None = None
        self._stopping = False

    @staticmethod
    def validate(expression: str) -> None:
        if not croniter.is_valid(expression):
            raise InvalidTriggerConfig(f"invalid cron expression: {expression!r}")

    def add_job(self, expression: str, callback: Callable[[], None]) -> int:
        self.validate(expression)
        with self._wakeup:
            job_id = next(self._ids)
            next_run = croniter(expression, self._clock()).get_next(datetime)
            self._jobs[job_id] = CronJob(job_id, expression, callback, next_run)
            self._wakeup.notify_all()
        logger.debug("cron job %d scheduled for %s", job_id, next_run.isoformat())
        return job_id

    def remove_job(self, job_id: int) -> None:
        with self._wakeup:
            if self._jobs.pop(job_id, None) is None:
                raise NotFound(f"cron job not found: {job_id}")
            self._wakeup.notify_all()

    def jobs(self) -> list[CronJob]:
        with self._wakeup:
            return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._wakeup:
            if self.running:
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._loop, name="cron-scheduler", daemon=True)
            self._thread.start()

    def stop(self, timeout: float | None = None) -> bool:
        """Stops the timer thread; returns False if it did not exit in time."""
        with self._wakeup:
            thread = self._thread
            self._stopping = True
            self._wakeup.notify_all()
        if thread is None:
            return True
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("cron scheduler thread did not stop within %ss", timeout)
            return False
        self._thread = None
        return True

    def _loop(self) -> None:
        while True:
            with self._wakeup:
                if self._stopping:
                    return
                due = self._due_jobs()
                if not due:
                    self._wakeup.wait(self._seconds_until_next())
                    continue
            for job in due:
                self._fire(job)

    def _due_jobs(self) -> list[CronJob]:
        now = self._clock()
        due = [job for job in self._jobs.values() if job.next_run <= now]
        for job in due:
            job.next_run = croniter(job.expression, now).get_next(datetime)
        return due

    def _seconds_until_next(self) -> float | None:
        if not self._jobs:
            return None
        earliest = min(job.next_run for job in self._jobs.values())
        return max(0.0, (earliest - self._clock()).total_seconds())

    def _fire(self, job: CronJob) -> None:
        try:
            job.callback()
        except Exception:
            logger.exception("cron job %d (%s) failed", job.id, job.expression)
