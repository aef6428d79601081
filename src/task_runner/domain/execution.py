import uuid
from datetime import datetime
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

class TaskExecution(BaseModel):
    """
    Represents a single run attempt of a task.
    """
    id: str = Field(default_factory=lambda: f"exe_{uuid.uuid4().hex[:12]}", description="Unique execution identifier")
    task_id: str = Field(..., description="The task this execution belongs to")
    status: ExecutionStatus = ExecutionStatus.RUNNING
    started_at: datetime = Field(default_factory=lambda: datetime.now(ZoneInfo("UTC")))
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    attempt: int = Field(1, ge=1, description="1-based ordinal within the task's current failure streak")

    @field_validator('started_at', 'completed_at')
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=ZoneInfo("UTC"))
        return v

    def succeed(self) -> None:
        self.status = ExecutionStatus.SUCCESS
        self.completed_at = datetime.now(ZoneInfo("UTC"))

    def fail(self, error: str) -> None:
        """
        Mark the execution failed with the handler's error message.
        """
        self.status = ExecutionStatus.FAILED
        self.error = error
        self.completed_at = datetime.now(ZoneInfo("UTC"))
