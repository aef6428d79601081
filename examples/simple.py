import asyncio
import logging
from typing import Any

from task_runner import (
    RateLimit,
    RetryPolicy,
    TaskConfig,
    TaskRunner,
    TaskRunnerConfig,
    TaskType,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")


async def heartbeat() -> None:
    print("Heartbeat")


async def send_welcome(event: str, data: Any) -> None:
    print(f"Welcome email for user {data['user_id']} ({event})")


def remind() -> None:
    print("Reminder fired")


async def main():
    runner = TaskRunner(TaskRunnerConfig.from_env())
    await runner.start()

    await runner.create_task(TaskConfig(
        id="heartbeat",
        type=TaskType.SCHEDULE,
        cron="*/5 * * * * *",
        handler=heartbeat,
    ))
    await runner.create_task(TaskConfig(
        id="reminder",
        type=TaskType.SCHEDULE,
        after="3s",
        handler=remind,
    ))
    await runner.create_task(TaskConfig(
        id="user-welcome",
        type=TaskType.EVENT,
        on_event="user:*",
        handler=send_welcome,
        retry_policy=RetryPolicy(max_attempts=3, delay="1s", backoff="exponential"),
        rate_limit=RateLimit(interval="1m", limit=10),
    ))

    await runner.publish_event("user:registered", {"user_id": "123"})
    print(f"Next heartbeat at {await runner.get_next_run_time('heartbeat')}")

    await asyncio.sleep(12)
    print(await runner.get_stats())
    await runner.shutdown()

if __name__ == "__main__":
    asyncio.run(main())
