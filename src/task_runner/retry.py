"""
Retry backoff and per-task rate limiting.

Both decisions take an optional `now` so they can be evaluated against a
fixed clock; the runner always passes the current time.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from task_runner.domain.task import BackoffStrategy, RateLimit, RateLimitStrategy, RetryPolicy, Task
from task_runner.storages.protocol import TaskStorage
from task_runner.time_utils import parse_duration, utcnow

logger = logging.getLogger(__name__)


def compute_backoff(policy: RetryPolicy, retry_number: int) -> int:
    """
    Delay in milliseconds before the given retry.

    Args:
        policy (RetryPolicy): The task's retry policy.
        retry_number (int): 1-based ordinal of the retry about to run.
    """
    base = parse_duration(policy.delay) if policy.delay else 0
    if policy.backoff == BackoffStrategy.EXPONENTIAL:
        return base * 2 ** (retry_number - 1)
    return base


class RetryController:
    def __init__(self, storage: TaskStorage):
        self.storage = storage

    def plan_retry(
        self,
        task: Task,
        policy: RetryPolicy,
        failed_attempt: int,
        now: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Decide whether a failed run gets another attempt.

        Returns the delay in milliseconds, or None when attempts are exhausted or
        the retry would land outside the retry window.
        """
        if failed_attempt >= task.max_attempts:
            logger.error(f"Task exhausted retries: {task.id} (max_attempts={task.max_attempts})")
            return None

        delay = compute_backoff(policy, failed_attempt)

        if policy.max_retry_duration:
            now = now or utcnow()
            elapsed_ms = (now - task.created_at).total_seconds() * 1000
            if elapsed_ms + delay > parse_duration(policy.max_retry_duration):
                logger.warning(
                    f"Task retry window exceeded: {task.id} (max_retry_duration={policy.max_retry_duration})"
                )
                return None

        return delay

    async def is_rate_limited(
        self,
        task: Task,
        rate_limit: Optional[RateLimit],
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Check the task's rate limit and record the run when it is allowed.
        """
        if rate_limit is None:
            return False

        now = now or utcnow()
        window = timedelta(milliseconds=parse_duration(rate_limit.interval))

        if rate_limit.strategy == RateLimitStrategy.SLIDING:
            recent = await self.storage.count_executions_since(task.id, now - window)
            return recent >= rate_limit.limit

        if task.rate_window is None or now - task.rate_window >= window:
            if rate_limit.limit < 1:
                return True
            await self.storage.update_task(task.id, rate_count=1, rate_window=now)
            return False

        if task.rate_count >= rate_limit.limit:
            return True

        await self.storage.update_task(task.id, rate_count=task.rate_count + 1)
        return False
