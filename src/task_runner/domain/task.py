from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TaskType(str, Enum):
    SCHEDULE = "schedule"
    EVENT = "event"

class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"

class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"

class RateLimitStrategy(str, Enum):
    FIXED = "fixed"
    SLIDING = "sliding"


class RetryPolicy(BaseModel):
    """
    How a failing task is retried.
    """
    max_attempts: int = Field(1, ge=1, description="Total attempts allowed per failure streak, 1 means no retry")
    delay: Optional[str] = Field(None, description="Base delay between attempts as a duration string, e.g. '5s'")
    backoff: BackoffStrategy = Field(BackoffStrategy.FIXED, description="Fixed delay or exponential growth of the base delay")
    max_retry_duration: Optional[str] = Field(None, description="Retry window measured from task creation, e.g. '1h'")

class RateLimit(BaseModel):
    """
    How often a task may run within an interval.
    """
    interval: str = Field(..., description="Window length as a duration string, e.g. '1m'")
    limit: int = Field(..., ge=0, description="Maximum runs per window")
    strategy: RateLimitStrategy = Field(RateLimitStrategy.FIXED, description="Fixed window counter or sliding window over the execution log")


TaskHandler = Callable[..., Any]


class TaskConfig(BaseModel):
    """
    Caller input for registering a task. Only the scheduling fields are persisted;
    the handler lives in memory for the lifetime of the runner.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: Optional[str] = Field(None, description="Caller-supplied unique task identifier")
    name: Optional[str] = Field(None, description="Display label")
    type: TaskType = Field(..., description="Schedule-triggered or event-triggered")
    preset: Optional[str] = Field(None, description="Named cron alias, e.g. '@daily'")
    cron: Optional[str] = Field(None, description="Raw cron expression")
    at: Optional[str] = Field(None, description="Absolute ISO timestamp, may be timezone-naive")
    after: Optional[str] = Field(None, description="Delay relative to creation, e.g. '5m'")
    timezone: Optional[str] = Field(None, description="IANA timezone name, defaults to the runner's timezone")
    on_event: Optional[str] = Field(None, description="Topic an event task listens to")
    handler: Optional[TaskHandler] = Field(None, description="Callable invoked on each run, sync or async")
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    rate_limit: Optional[RateLimit] = None
    is_paused: bool = False
    metadata: Optional[Dict[str, Any]] = Field(None, description="Opaque caller payload")


class Task(BaseModel):
    """
    Durable record of a schedulable unit of work.
    """
    id: str = Field(..., description="Unique task identifier")
    name: Optional[str] = None
    type: TaskType
    preset: Optional[str] = None
    cron: Optional[str] = Field(None, description="Cron expression, resolved from the preset when one was given")
    at: Optional[str] = Field(None, description="Absolute time of a one-shot task as originally given")
    after: Optional[str] = Field(None, description="Relative delay the one-shot time was computed from")
    timezone: Optional[str] = None
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    on_event: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 1
    rate_count: int = 0
    rate_window: Optional[datetime] = None
    status: TaskStatus = TaskStatus.PENDING
    is_paused: bool = False
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(ZoneInfo("UTC")),
        description="Task creation timestamp with UTC timezone"
    )

    @field_validator('next_run_at', 'last_run_at', 'rate_window', 'created_at')
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=ZoneInfo("UTC"))
        return v

    @property
    def is_recurring(self) -> bool:
        return self.type == TaskType.SCHEDULE and self.cron is not None

    @property
    def is_one_shot(self) -> bool:
        return self.type == TaskType.SCHEDULE and self.at is not None

    def pause(self) -> None:
        self.is_paused = True
        self.status = TaskStatus.PAUSED

    def resume(self) -> None:
        self.is_paused = False
        self.status = TaskStatus.PENDING
