"""
Task runner configuration.

Precedence (highest to lowest):
1. Explicit values passed in code
2. Environment variables (TASK_RUNNER_*)
3. Defaults (in-memory store, UTC)

Environment variable mapping:
    TASK_RUNNER_STORAGE  → storage_location
    TASK_RUNNER_TIMEZONE → default_timezone
"""

import os
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from task_runner.errors import InvalidTimezoneError
from task_runner.storages.sqlalchemy import MEMORY_URL
from task_runner.time_utils import validate_timezone

ENV_PREFIX = "TASK_RUNNER"


class TaskRunnerConfig(BaseModel):
    """
    Construction options for a TaskRunner.
    """
    storage_location: Optional[str] = Field(
        None,
        description="SQLite file path or SQLAlchemy async URL; None or ':memory:' keeps everything in memory",
    )
    default_timezone: str = Field("UTC", description="IANA timezone used when a task does not name one")

    @field_validator('default_timezone')
    def check_timezone(cls, v: str) -> str:
        if not validate_timezone(v):
            raise InvalidTimezoneError(v)
        return v

    @property
    def database_url(self) -> str:
        location = self.storage_location
        if not location or location == ":memory:":
            return MEMORY_URL
        if "://" in location:
            return location
        return f"sqlite+aiosqlite:///{os.path.expanduser(location)}"

    @classmethod
    def from_env(cls, **overrides: Any) -> "TaskRunnerConfig":
        values: dict = {}
        storage = os.getenv(f"{ENV_PREFIX}_STORAGE")
        if storage:
            values["storage_location"] = storage
        timezone = os.getenv(f"{ENV_PREFIX}_TIMEZONE")
        if timezone:
            values["default_timezone"] = timezone
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)
