import asyncio
import inspect
import logging
from datetime import datetime
from typing import Optional, Set
from zoneinfo import ZoneInfo

from croniter import croniter

from task_runner.engines.protocol import CronCallback, CronEngine, CronJob

logger = logging.getLogger(__name__)


class AsyncioCronJob(CronJob):
    """
    Cron job driven by croniter and an asyncio task that sleeps until each fire time.

    The callback is invoked without blocking the schedule: coroutines it returns
    are spawned as separate tasks so a slow fire never delays the next one.
    """

    def __init__(self, expression: str, timezone: str, callback: CronCallback, name: Optional[str] = None):
        self.expression = expression
        self.timezone = timezone
        self.name = name or expression
        self._tz = ZoneInfo(timezone)
        self._callback = callback
        self._paused = False
        self._stopped = False
        self._previous: Optional[datetime] = None
        self._last_scheduled: Optional[datetime] = None
        self._fires: Set[asyncio.Task] = set()
        self._task: asyncio.Task = asyncio.create_task(self._loop(), name=f"cron:{self.name}")

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        if not self._stopped:
            self._paused = False

    def stop(self) -> None:
        self._stopped = True
        if not self._task.done():
            self._task.cancel()

    def next_run(self) -> Optional[datetime]:
        if self._stopped:
            return None
        return self._next_after(datetime.now(self._tz))

    def previous_run(self) -> Optional[datetime]:
        return self._previous

    def _next_after(self, start: datetime) -> datetime:
        cron = croniter(self.expression, start, second_at_beginning=True)
        return cron.get_next(datetime)

    async def _loop(self) -> None:
        try:
            while not self._stopped:
                now = datetime.now(self._tz)
                # sleep may wake a hair early, never fire the same slot twice
                start = max(now, self._last_scheduled) if self._last_scheduled else now
                fire_at = self._next_after(start)
                self._last_scheduled = fire_at
                delay = (fire_at - datetime.now(self._tz)).total_seconds()
                await asyncio.sleep(max(delay, 0))
                if self._stopped:
                    break
                if self._paused:
                    continue
                self._previous = fire_at
                self._fire()
        except asyncio.CancelledError:
            pass

    def _fire(self) -> None:
        try:
            result = self._callback()
        except Exception as e:
            logger.error(f"Cron job {self.name!r} callback failed: {e}", exc_info=e)
            return
        if inspect.isawaitable(result):
            fire = asyncio.ensure_future(result)
            self._fires.add(fire)
            fire.add_done_callback(self._fires.discard)


class AsyncioCronEngine(CronEngine):
    """
    Cron engine running every job inside the current asyncio event loop.
    """

    def is_valid(self, expression: str) -> bool:
        if not isinstance(expression, str) or not expression.strip():
            return False
        try:
            croniter(expression, second_at_beginning=True)
            return True
        except (ValueError, KeyError):
            return False

    def schedule(
        self,
        expression: str,
        timezone: str,
        callback: CronCallback,
        name: Optional[str] = None,
    ) -> AsyncioCronJob:
        job = AsyncioCronJob(expression, timezone, callback, name=name)
        logger.debug(f"Cron job {job.name!r} armed: {expression} ({timezone})")
        return job
