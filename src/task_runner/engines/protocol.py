from datetime import datetime
from typing import Any, Callable, Optional, Protocol

CronCallback = Callable[[], Any]


class CronJob(Protocol):
    """
    Protocol for an armed cron trigger.
    """

    @property
    def is_paused(self) -> bool:
        ...

    @property
    def is_stopped(self) -> bool:
        ...

    def pause(self) -> None:
        """
        Stop delivering fires until resumed. The job keeps its schedule.
        """
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        """
        Permanently stop the job. A stopped job cannot be resumed.
        """
        ...

    def next_run(self) -> Optional[datetime]:
        """
        Return the next fire time, or None once stopped.
        """
        ...

    def previous_run(self) -> Optional[datetime]:
        """
        Return the last time the job fired, or None if it never has.
        """
        ...


class CronEngine(Protocol):
    """
    Protocol for cron evaluation engines.
    """

    def is_valid(self, expression: str) -> bool:
        ...

    def schedule(
        self,
        expression: str,
        timezone: str,
        callback: CronCallback,
        name: Optional[str] = None,
    ) -> CronJob:
        """
        Arm a job that calls `callback` on every fire of `expression` evaluated in `timezone`.

        Args:
            expression (str): Cron expression, five fields or six with leading seconds.
            timezone (str): IANA timezone the expression is evaluated in.
            callback (CronCallback): Called with no arguments on each fire.
            name (Optional[str]): Label used in logs and task names.
        """
        ...
