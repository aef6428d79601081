"""
Task runner exception hierarchy.

Every error raised by the runner inherits from TaskRunnerError.
Validation problems are also ValueErrors and unknown ids are also
LookupErrors, so callers can catch them without importing this module.

Usage:
    try:
        await runner.create_task(config)
    except InvalidTimezoneError as e:
        # Handle a bad IANA zone name
    except TaskValidationError as e:
        # Handle any rejected task configuration
"""

from typing import Any, Dict, Optional


class TaskRunnerError(Exception):
    """Base exception for all task runner errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Validation ━━━


class TaskValidationError(TaskRunnerError, ValueError):
    """A task configuration was rejected."""

    pass


class DurationFormatError(TaskValidationError):
    """A duration string is not of the form '<n>ms|s|m|h|d'."""

    def __init__(self, duration: Any):
        self.duration = duration
        super().__init__(
            f'Invalid duration format: {duration}. Expected format: "5m", "1h", "30s", etc.',
            {"duration": duration},
        )


class InvalidTimezoneError(TaskValidationError):
    """Timezone name is not a resolvable IANA zone."""

    def __init__(self, timezone: Any):
        self.timezone = timezone
        super().__init__(f"Invalid timezone: {timezone}", {"timezone": timezone})


class InvalidDateFormatError(TaskValidationError):
    """An absolute timestamp could not be parsed."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Invalid date format: {value}", {"value": value})


class InvalidPresetError(TaskValidationError):
    """Preset name is not one of the known aliases."""

    def __init__(self, preset: str):
        self.preset = preset
        super().__init__(f"Invalid preset: {preset}", {"preset": preset})


class InvalidCronError(TaskValidationError):
    """Cron expression rejected by the cron engine."""

    def __init__(self, expression: str):
        self.expression = expression
        super().__init__(
            f"Invalid cron expression: {expression}", {"expression": expression}
        )


class DuplicateTaskError(TaskValidationError):
    """A task with the same id already exists."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task with ID {task_id} already exists", {"task_id": task_id})


# ━━━ Lookup ━━━


class TaskNotFoundError(TaskRunnerError, LookupError):
    """No task is stored under the requested id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})
