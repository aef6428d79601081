"""
Scheduler: turns resolved task records into armed triggers.

Recurring tasks get a cron job from the cron engine, one-shot tasks get a
single asyncio timer, and failed runs get a retry timer. Every trigger calls
back into the runner through `on_fire(task_id, retry=..., event=..., data=...)`,
which must return without waiting for the handler.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from task_runner.domain.task import Task
from task_runner.engines.protocol import CronEngine, CronJob
from task_runner.time_utils import utcnow

logger = logging.getLogger(__name__)

FireCallback = Callable[..., Any]


class Scheduler:
    def __init__(self, cron_engine: CronEngine, on_fire: FireCallback, default_timezone: str = "UTC"):
        self.cron_engine = cron_engine
        self.default_timezone = default_timezone
        self._on_fire = on_fire
        self._cron_jobs: Dict[str, CronJob] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._retries: Dict[str, asyncio.Task] = {}

    # ── Arming ────────────────────────────────────────────────────────────────

    def arm(self, task: Task) -> bool:
        """
        Arm the trigger for a schedule task. Returns False if the task has nothing to arm.
        """
        self._disarm(task.id)
        if task.cron:
            self._cron_jobs[task.id] = self.cron_engine.schedule(
                task.cron,
                task.timezone or self.default_timezone,
                lambda: self._on_fire(task.id),
                name=task.id,
            )
            return True

        if task.next_run_at is not None:
            delay = (task.next_run_at - utcnow()).total_seconds()
            if delay <= 0:
                logger.warning(f"Task {task.id} was due at {task.next_run_at.isoformat()}, firing immediately")
                delay = 0
            self._timers[task.id] = asyncio.create_task(
                self._fire_later(task.id, delay), name=f"timer:{task.id}"
            )
            return True

        return False

    def pause(self, task_id: str) -> None:
        """
        Pause a cron job in place; one-shot and retry timers are released.
        """
        job = self._cron_jobs.get(task_id)
        if job:
            job.pause()
        self._cancel(self._timers, task_id)
        self.cancel_retry(task_id)

    def resume(self, task: Task) -> bool:
        job = self._cron_jobs.get(task.id)
        if job and not job.is_stopped:
            job.resume()
            return True
        return self.arm(task)

    def remove(self, task_id: str) -> None:
        self._disarm(task_id)
        self.cancel_retry(task_id)

    def arm_retry(self, task_id: str, delay_ms: int, event: Optional[str] = None, data: Any = None) -> None:
        self.cancel_retry(task_id)
        self._retries[task_id] = asyncio.create_task(
            self._retry_later(task_id, delay_ms / 1000, event, data), name=f"retry:{task_id}"
        )

    def cancel_retry(self, task_id: str) -> None:
        self._cancel(self._retries, task_id)

    def has_pending_retry(self, task_id: str) -> bool:
        return task_id in self._retries

    # ── Introspection ─────────────────────────────────────────────────────────

    def is_armed(self, task_id: str) -> bool:
        return task_id in self._cron_jobs or task_id in self._timers

    def get_cron_job(self, task_id: str) -> Optional[CronJob]:
        return self._cron_jobs.get(task_id)

    def next_run(self, task_id: str) -> Optional[datetime]:
        job = self._cron_jobs.get(task_id)
        return job.next_run() if job else None

    def previous_run(self, task_id: str) -> Optional[datetime]:
        job = self._cron_jobs.get(task_id)
        return job.previous_run() if job else None

    @property
    def cron_job_count(self) -> int:
        return len(self._cron_jobs)

    @property
    def timer_count(self) -> int:
        return len(self._timers)

    @property
    def retry_count(self) -> int:
        return len(self._retries)

    def shutdown(self) -> None:
        for job in self._cron_jobs.values():
            job.stop()
        self._cron_jobs.clear()
        for timers in (self._timers, self._retries):
            for timer in timers.values():
                timer.cancel()
            timers.clear()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _disarm(self, task_id: str) -> None:
        job = self._cron_jobs.pop(task_id, None)
        if job:
            job.stop()
        self._cancel(self._timers, task_id)

    @staticmethod
    def _cancel(timers: Dict[str, asyncio.Task], task_id: str) -> None:
        timer = timers.pop(task_id, None)
        if timer and not timer.done():
            timer.cancel()

    async def _fire_later(self, task_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        # drop the handle first so a pause during the run cannot cancel it
        self._timers.pop(task_id, None)
        self._on_fire(task_id)

    async def _retry_later(self, task_id: str, delay: float, event: Optional[str], data: Any) -> None:
        await asyncio.sleep(delay)
        self._retries.pop(task_id, None)
        self._on_fire(task_id, retry=True, event=event, data=data)
