from datetime import datetime
from typing import Any, List, Optional, Protocol

from task_runner.domain.execution import TaskExecution
from task_runner.domain.task import Task, TaskStatus, TaskType


class TaskStorage(Protocol):
    async def create_tables(self) -> None:
        """Create the schema if it does not exist yet."""
        ...

    async def create_task(self, task: Task) -> str:
        """Create a new task and return its ID. Raises DuplicateTaskError if the ID is taken."""
        ...

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by its ID."""
        ...

    async def update_task(self, task_id: str, **fields: Any) -> bool:
        """Update only the named fields of a task. Return True if the task exists."""
        ...

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its executions. Return True if the task existed."""
        ...

    async def list_tasks(self) -> List[Task]:
        """List all tasks ordered by creation time."""
        ...

    async def list_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        ...

    async def list_tasks_by_type(self, task_type: TaskType) -> List[Task]:
        ...

    async def list_pending_tasks(self) -> List[Task]:
        """List tasks that are pending and not paused."""
        ...

    async def create_execution(self, execution: TaskExecution) -> str:
        """Create a new execution record and return its ID."""
        ...

    async def update_execution(self, execution_id: str, **fields: Any) -> bool:
        """Update only the named fields of an execution."""
        ...

    async def list_executions(self, task_id: str) -> List[TaskExecution]:
        """List executions for a task ordered by start time descending."""
        ...

    async def count_executions_since(self, task_id: str, since: datetime) -> int:
        """Count executions of a task started at or after the given instant."""
        ...

    async def close(self) -> None:
        """Release the underlying connection pool."""
        ...
