"""
TaskRunner: the single entry point for registering and running tasks.

Design:
- Schedule tasks are armed on the Scheduler (cron job or one-shot timer);
  event tasks are subscribers on the EventBus
- Every fire is dispatched as its own asyncio task; an in-memory set of
  running task ids drops fires for a task that is still executing
- Each run writes a TaskExecution, updates the Task record and, on failure,
  asks the RetryController for a retry delay
- Handlers are held in memory only. After a restart, stored tasks stay
  unarmed until the application calls `register_handler` for them
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from task_runner.config import TaskRunnerConfig
from task_runner.domain.execution import TaskExecution
from task_runner.domain.task import (
    RateLimit,
    RetryPolicy,
    Task,
    TaskConfig,
    TaskHandler,
    TaskStatus,
    TaskType,
)
from task_runner.engines.asyncio_cron import AsyncioCronEngine
from task_runner.engines.protocol import CronEngine
from task_runner.errors import (
    DuplicateTaskError,
    InvalidCronError,
    InvalidTimezoneError,
    TaskNotFoundError,
    TaskRunnerError,
    TaskValidationError,
)
from task_runner.presets import resolve_preset
from task_runner.pubsub import EventBus, PubSubCallback
from task_runner.retry import RetryController
from task_runner.scheduler import Scheduler
from task_runner.storages.protocol import TaskStorage
from task_runner.storages.sqlalchemy import SqlAlchemyStorage
from task_runner.time_utils import (
    convert_after_to_at,
    parse_duration,
    parse_iso,
    resolve_absolute_time,
    utcnow,
    validate_timezone,
)

logger = logging.getLogger(__name__)

SCHEDULE_FIELDS = ("preset", "cron", "at", "after")


class RunnerStats(BaseModel):
    total: int
    pending: int
    running: int
    paused: int
    scheduled_jobs: int
    timeouts: int
    retries: int
    subscribers: int


class TaskRunner:
    """
    Schedules and runs tasks on the current asyncio event loop.

    Usage:
        runner = TaskRunner(TaskRunnerConfig(storage_location="./tasks.db"))
        await runner.start()

        await runner.create_task(TaskConfig(
            id="daily-cleanup",
            type=TaskType.SCHEDULE,
            preset="@daily",
            handler=cleanup,
        ))
        await runner.create_task(TaskConfig(
            id="user-welcome",
            type=TaskType.EVENT,
            on_event="user:registered",
            handler=send_welcome,
        ))

        await runner.publish_event("user:registered", {"user_id": "123"})
        await runner.shutdown()
    """

    def __init__(
        self,
        config: Optional[TaskRunnerConfig] = None,
        storage: Optional[TaskStorage] = None,
        cron_engine: Optional[CronEngine] = None,
    ):
        self.config: TaskRunnerConfig = config or TaskRunnerConfig()
        self.storage: TaskStorage = storage or SqlAlchemyStorage(self.config.database_url)
        self.event_bus = EventBus()
        self.scheduler = Scheduler(
            cron_engine or AsyncioCronEngine(), self._dispatch, self.config.default_timezone
        )
        self.retry_controller = RetryController(self.storage)
        self._configs: Dict[str, TaskConfig] = {}
        self._subscriptions: Dict[str, Callable[[], bool]] = {}
        self._running: Set[str] = set()
        self._workers: Set[asyncio.Task] = set()
        self._started = False
        self._closed = False

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Prepare the store and reconcile state left by a previous process.
        """
        if self._closed:
            raise TaskRunnerError("Task runner has been shut down")
        if self._started:
            return
        await self.storage.create_tables()
        self._started = True

        for task in await self.storage.list_tasks_by_status(TaskStatus.RUNNING):
            await self.storage.update_task(task.id, status=TaskStatus.PENDING)
            logger.warning(f"Task {task.id} was left running by a previous process, reset to pending")

        waiting = [task.id for task in await self.storage.list_pending_tasks() if task.id not in self._configs]
        if waiting:
            logger.info(f"{len(waiting)} stored task(s) waiting for register_handler: {', '.join(waiting)}")
        logger.info("Task runner initialized")

    async def shutdown(self) -> None:
        """
        Detach every trigger, cancel in-flight runs and close the store. Safe to call twice.
        """
        if self._closed:
            return
        self._closed = True

        self.scheduler.shutdown()
        for unsubscribe in self._subscriptions.values():
            unsubscribe()
        self._subscriptions.clear()

        workers = list(self._workers)
        for worker in workers:
            if not worker.done():
                worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._running.clear()
        self._configs.clear()

        await self.storage.close()
        logger.info("Task runner shutdown")

    # ── Task management ───────────────────────────────────────────────────────

    async def create_task(self, config: TaskConfig) -> str:
        await self._ensure_started()
        await self._validate_config(config)
        task = self._build_task(config)

        await self.storage.create_task(task)
        self._configs[task.id] = config

        if not task.is_paused:
            await self._arm(task)

        logger.info(f"Task created: {task.id} ({task.type.value})")
        return task.id

    async def register_handler(
        self,
        task_id: str,
        handler: TaskHandler,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limit: Optional[RateLimit] = None,
    ) -> None:
        """
        Attach a handler to a stored task, typically after a process restart.

        The task is armed right away unless it is paused.
        """
        await self._ensure_started()
        task = await self._require_task(task_id)
        if handler is None or not callable(handler):
            raise TaskValidationError("Task handler is required and must be callable")
        self._validate_durations(retry_policy, rate_limit)

        if retry_policy is None:
            retry_policy = RetryPolicy(max_attempts=task.max_attempts)
        elif retry_policy.max_attempts != task.max_attempts:
            await self.storage.update_task(task_id, max_attempts=retry_policy.max_attempts)
            task.max_attempts = retry_policy.max_attempts

        self._configs[task_id] = TaskConfig(
            id=task.id,
            name=task.name,
            type=task.type,
            on_event=task.on_event,
            timezone=task.timezone,
            handler=handler,
            retry_policy=retry_policy,
            rate_limit=rate_limit,
            is_paused=task.is_paused,
            metadata=task.metadata,
        )
        if not task.is_paused:
            await self._arm(task)
        logger.info(f"Handler registered: {task_id}")

    async def pause_task(self, task_id: str) -> bool:
        await self._ensure_started()
        task = await self._require_task(task_id)

        task.pause()
        await self.storage.update_task(task_id, is_paused=task.is_paused, status=task.status)
        if task.type == TaskType.SCHEDULE:
            self.scheduler.pause(task_id)
        else:
            self._unsubscribe(task_id)
            self.scheduler.cancel_retry(task_id)

        logger.info(f"Task paused: {task_id}")
        return True

    async def resume_task(self, task_id: str) -> bool:
        await self._ensure_started()
        task = await self._require_task(task_id)

        status = TaskStatus.RUNNING if task_id in self._running else TaskStatus.PENDING
        await self.storage.update_task(task_id, is_paused=False, status=status)
        task.resume()

        if task_id not in self._configs:
            logger.warning(f"Task resumed without a handler: {task_id}, it will be armed by register_handler")
        elif task.type == TaskType.SCHEDULE:
            self.scheduler.resume(task)
        else:
            self._subscribe(task)

        logger.info(f"Task resumed: {task_id}")
        return True

    async def delete_task(self, task_id: str) -> bool:
        await self._ensure_started()
        await self._require_task(task_id)
        await self._remove(task_id)
        logger.info(f"Task deleted: {task_id}")
        return True

    # ── Introspection ─────────────────────────────────────────────────────────

    async def get_task(self, task_id: str) -> Optional[Task]:
        await self._ensure_started()
        return await self.storage.get_task(task_id)

    async def get_all_tasks(self) -> List[Task]:
        await self._ensure_started()
        return await self.storage.list_tasks()

    async def get_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        await self._ensure_started()
        return await self.storage.list_tasks_by_status(status)

    async def get_tasks_by_type(self, task_type: TaskType) -> List[Task]:
        await self._ensure_started()
        return await self.storage.list_tasks_by_type(task_type)

    async def get_task_executions(self, task_id: str) -> List[TaskExecution]:
        await self._ensure_started()
        return await self.storage.list_executions(task_id)

    async def get_next_run_time(self, task_id: str) -> Optional[datetime]:
        await self._ensure_started()
        job = self.scheduler.get_cron_job(task_id)
        if job:
            return job.next_run()
        task = await self.storage.get_task(task_id)
        return task.next_run_at if task else None

    async def get_previous_run_time(self, task_id: str) -> Optional[datetime]:
        await self._ensure_started()
        job = self.scheduler.get_cron_job(task_id)
        if job and job.previous_run():
            return job.previous_run()
        task = await self.storage.get_task(task_id)
        return task.last_run_at if task else None

    async def get_stats(self) -> RunnerStats:
        await self._ensure_started()
        tasks = await self.storage.list_tasks()
        return RunnerStats(
            total=len(tasks),
            pending=sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            running=sum(1 for t in tasks if t.status == TaskStatus.RUNNING),
            paused=sum(1 for t in tasks if t.status == TaskStatus.PAUSED),
            scheduled_jobs=self.scheduler.cron_job_count,
            timeouts=self.scheduler.timer_count,
            retries=self.scheduler.retry_count,
            subscribers=self.event_bus.get_subscriber_count(),
        )

    # ── Events ────────────────────────────────────────────────────────────────

    async def publish_event(self, topic: str, data: Any = None) -> None:
        """
        Publish an event. Returns once every subscriber, event tasks included, has settled.
        """
        await self._ensure_started()
        logger.debug(f"Event published: {topic}")
        await self.event_bus.publish(topic, data)

    def subscribe_to_event(self, topic: str, callback: PubSubCallback) -> Callable[[], bool]:
        return self.event_bus.subscribe(topic, callback)

    def unsubscribe_from_event(self, topic: str, callback: PubSubCallback) -> bool:
        return self.event_bus.unsubscribe(topic, callback)

    # ── Validation ────────────────────────────────────────────────────────────

    async def _validate_config(self, config: TaskConfig) -> None:
        if not config.id:
            raise TaskValidationError("Task ID is required")
        if config.handler is None or not callable(config.handler):
            raise TaskValidationError("Task handler is required and must be callable")

        descriptors = [field for field in SCHEDULE_FIELDS if getattr(config, field)]
        if config.type == TaskType.SCHEDULE:
            if not descriptors:
                raise TaskValidationError("Schedule tasks require one of: preset, cron, at, or after")
            if len(descriptors) > 1:
                raise TaskValidationError(
                    f"Schedule tasks accept only one of: preset, cron, at, or after (got {', '.join(descriptors)})"
                )
            if config.on_event:
                raise TaskValidationError("on_event is only valid for event tasks")
        else:
            if not config.on_event:
                raise TaskValidationError("Event tasks require on_event to be specified")
            if descriptors:
                raise TaskValidationError(f"Event tasks cannot be scheduled with: {', '.join(descriptors)}")

        if config.timezone and not validate_timezone(config.timezone):
            raise InvalidTimezoneError(config.timezone)
        if config.cron and not self.scheduler.cron_engine.is_valid(config.cron):
            raise InvalidCronError(config.cron)
        self._validate_durations(config.retry_policy, config.rate_limit)

        if await self.storage.get_task(config.id) is not None:
            raise DuplicateTaskError(config.id)

    @staticmethod
    def _validate_durations(retry_policy: Optional[RetryPolicy], rate_limit: Optional[RateLimit]) -> None:
        if retry_policy:
            for duration in (retry_policy.delay, retry_policy.max_retry_duration):
                if duration is not None:
                    parse_duration(duration)
        if rate_limit:
            parse_duration(rate_limit.interval)

    def _build_task(self, config: TaskConfig) -> Task:
        timezone = config.timezone or self.config.default_timezone
        cron = at = next_run_at = None

        if config.type == TaskType.SCHEDULE:
            if config.preset:
                cron = resolve_preset(config.preset)
            elif config.cron:
                cron = config.cron
            elif config.after:
                # evaluated once here, never re-evaluated on resume
                at = convert_after_to_at(config.after)
                next_run_at = parse_iso(at)
            elif config.at:
                resolved = resolve_absolute_time(config.at, timezone)
                at = config.at
                next_run_at = parse_iso(resolved.utc_timestamp)
                timezone = resolved.timezone

        return Task(
            id=config.id,
            name=config.name,
            type=config.type,
            preset=config.preset,
            cron=cron,
            at=at,
            after=config.after,
            timezone=timezone,
            next_run_at=next_run_at,
            on_event=config.on_event,
            max_attempts=config.retry_policy.max_attempts,
            status=TaskStatus.PAUSED if config.is_paused else TaskStatus.PENDING,
            is_paused=config.is_paused,
            metadata=config.metadata,
        )

    # ── Arming ────────────────────────────────────────────────────────────────

    async def _arm(self, task: Task) -> None:
        if task.type == TaskType.EVENT:
            self._subscribe(task)
            return
        if self.scheduler.is_armed(task.id):
            return
        self.scheduler.arm(task)
        if task.is_recurring:
            next_run = self.scheduler.next_run(task.id)
            if next_run:
                await self.storage.update_task(task.id, next_run_at=next_run)

    def _subscribe(self, task: Task) -> None:
        if task.id in self._subscriptions:
            return
        task_id = task.id

        async def on_event(event: str, data: Any) -> None:
            await self._dispatch(task_id, event=event, data=data)

        self._subscriptions[task_id] = self.event_bus.subscribe(task.on_event, on_event)

    def _unsubscribe(self, task_id: str) -> None:
        unsubscribe = self._subscriptions.pop(task_id, None)
        if unsubscribe:
            unsubscribe()

    async def _remove(self, task_id: str) -> None:
        self.scheduler.remove(task_id)
        self._unsubscribe(task_id)
        self._configs.pop(task_id, None)
        await self.storage.delete_task(task_id)

    # ── Execution ─────────────────────────────────────────────────────────────

    def _dispatch(
        self,
        task_id: str,
        retry: bool = False,
        event: Optional[str] = None,
        data: Any = None,
    ) -> asyncio.Task:
        """
        Run a task in the background and return the asyncio task doing it.
        """
        worker = asyncio.create_task(
            self._execute(task_id, retry=retry, event=event, data=data), name=f"run:{task_id}"
        )
        self._workers.add(worker)
        worker.add_done_callback(self._on_worker_done)
        return worker

    def _on_worker_done(self, worker: asyncio.Task) -> None:
        self._workers.discard(worker)
        if not worker.cancelled() and worker.exception() is not None:
            logger.error(f"Task execution crashed: {worker.get_name()}", exc_info=worker.exception())

    async def _execute(
        self,
        task_id: str,
        retry: bool = False,
        event: Optional[str] = None,
        data: Any = None,
    ) -> None:
        if self._closed:
            return
        if task_id in self._running:
            logger.debug(f"Task {task_id} still executing, dropping trigger")
            return
        config = self._configs.get(task_id)
        if config is None:
            logger.warning(f"Task {task_id} fired without a registered handler, skipping")
            return

        self._running.add(task_id)
        try:
            task = await self.storage.get_task(task_id)
            if task is None or task.is_paused:
                return

            if await self.retry_controller.is_rate_limited(task, config.rate_limit):
                logger.info(f"Task rate limited: {task_id}")
                return

            # a natural trigger after a finished failure streak starts a new one
            streak = task.attempts
            if not retry and not self.scheduler.has_pending_retry(task_id):
                streak = 0
            attempt = streak + 1

            execution = TaskExecution(task_id=task_id, attempt=attempt)
            await self.storage.create_execution(execution)
            await self.storage.update_task(task_id, status=TaskStatus.RUNNING, attempts=attempt)
            logger.info(f"Task started: {task_id} (attempt {attempt})")

            try:
                await self._invoke(config.handler, event, data)
            except asyncio.CancelledError:
                execution.fail("cancelled")
                await self._finish_execution(execution)
                await self._settle(task_id)
                raise
            except Exception as e:
                execution.fail(str(e) or type(e).__name__)
                await self._finish_execution(execution)
                logger.error(f"Task failed: {task_id} (attempt {attempt}): {execution.error}", exc_info=e)
                await self._handle_failure(task, config, attempt, event, data)
            else:
                execution.succeed()
                await self._finish_execution(execution)
                await self._handle_success(task, execution)
        finally:
            self._running.discard(task_id)

    @staticmethod
    async def _invoke(handler: TaskHandler, event: Optional[str], data: Any) -> None:
        result = handler(event, data) if event is not None else handler()
        if inspect.isawaitable(result):
            await result

    async def _finish_execution(self, execution: TaskExecution) -> None:
        await self.storage.update_execution(
            execution.id,
            status=execution.status,
            completed_at=execution.completed_at,
            error=execution.error,
        )

    async def _settle(self, task_id: str, **fields: Any) -> Optional[TaskStatus]:
        """
        Return a task to pending, or keep it paused if a pause arrived mid-run.
        Returns None if the task was deleted meanwhile.
        """
        current = await self.storage.get_task(task_id)
        if current is None:
            return None
        status = TaskStatus.PAUSED if current.is_paused else TaskStatus.PENDING
        await self.storage.update_task(task_id, status=status, **fields)
        return status

    async def _handle_success(self, task: Task, execution: TaskExecution) -> None:
        # a natural run that succeeded while a retry was pending ends the streak
        self.scheduler.cancel_retry(task.id)
        fields: Dict[str, Any] = {"last_run_at": execution.completed_at or utcnow(), "attempts": 0}
        if task.is_recurring:
            next_run = self.scheduler.next_run(task.id)
            if next_run:
                fields["next_run_at"] = next_run
        if await self._settle(task.id, **fields) is None:
            return
        logger.info(f"Task completed: {task.id}")

        if task.is_one_shot:
            await self._remove(task.id)
            logger.info(f"One-shot task deleted after running: {task.id}")

    async def _handle_failure(
        self,
        task: Task,
        config: TaskConfig,
        attempt: int,
        event: Optional[str],
        data: Any,
    ) -> None:
        status = await self._settle(task.id)
        if status is None:
            return

        delay = self.retry_controller.plan_retry(task, config.retry_policy, attempt)
        if delay is not None:
            if status == TaskStatus.PAUSED:
                return
            self.scheduler.arm_retry(task.id, delay, event=event, data=data)
            logger.info(f"Task retry scheduled: {task.id} (attempt {attempt + 1}, delay {delay}ms)")
        elif task.is_one_shot:
            await self._remove(task.id)
            logger.info(f"One-shot task deleted after its last attempt: {task.id}")

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _ensure_started(self) -> None:
        if not self._started:
            await self.start()

    async def _require_task(self, task_id: str) -> Task:
        task = await self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task
