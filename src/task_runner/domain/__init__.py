from .task import (
    BackoffStrategy,
    RateLimit,
    RateLimitStrategy,
    RetryPolicy,
    Task,
    TaskConfig,
    TaskHandler,
    TaskStatus,
    TaskType,
)
from .execution import ExecutionStatus, TaskExecution

__all__ = [
    "Task", "TaskConfig", "TaskHandler", "TaskType", "TaskStatus",
    "RetryPolicy", "BackoffStrategy", "RateLimit", "RateLimitStrategy",
    "TaskExecution", "ExecutionStatus",
]
