"""
Task Runner

This module defines the core concepts and components of a durable task scheduling
and event-dispatch engine.

Core Concepts:

Task:
    A Task represents a unit of work that can be triggered for execution.
    It is either a schedule task (cron expression, named preset, absolute time or
    relative delay) or an event task that runs whenever a matching topic is published.
    A Task describes when to run; its handler is supplied in memory by the caller.

TaskExecution:
    A TaskExecution represents a single run attempt of a Task.
    Each fire of a trigger, and each retry after a failure, creates one execution
    that records its outcome and error message.

Relationships:
    - A Task can have multiple TaskExecution records; deleting the Task deletes them.
    - At most one execution of a given Task is in flight at any time.
"""

import logging

from .config import TaskRunnerConfig
from .domain import (
    BackoffStrategy,
    ExecutionStatus,
    RateLimit,
    RateLimitStrategy,
    RetryPolicy,
    Task,
    TaskConfig,
    TaskExecution,
    TaskStatus,
    TaskType,
)
from .errors import (
    DuplicateTaskError,
    DurationFormatError,
    InvalidCronError,
    InvalidDateFormatError,
    InvalidPresetError,
    InvalidTimezoneError,
    TaskNotFoundError,
    TaskRunnerError,
    TaskValidationError,
)
from .pubsub import EventBus
from .runner import RunnerStats, TaskRunner

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "TaskRunner", "TaskRunnerConfig", "RunnerStats", "EventBus",
    "Task", "TaskConfig", "TaskExecution", "TaskType", "TaskStatus", "ExecutionStatus",
    "RetryPolicy", "BackoffStrategy", "RateLimit", "RateLimitStrategy",
    "TaskRunnerError", "TaskValidationError", "TaskNotFoundError", "DuplicateTaskError",
    "DurationFormatError", "InvalidTimezoneError", "InvalidDateFormatError",
    "InvalidPresetError", "InvalidCronError",
]
