import asyncio
import json
from datetime import datetime, timezone as dt_timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    delete,
    func,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from task_runner.domain.execution import ExecutionStatus, TaskExecution
from task_runner.domain.task import Task, TaskStatus, TaskType
from task_runner.errors import DuplicateTaskError
from task_runner.storages.protocol import TaskStorage

Base = declarative_base()

MEMORY_URL = "sqlite+aiosqlite:///:memory:"


class UTCDateTime(TypeDecorator):
    """
    Stores datetimes as naive UTC and returns them timezone-aware.

    SQLite discards timezone information, so values are normalized on the way in
    and UTC is re-attached on the way out.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt_timezone.utc)
        return value.astimezone(dt_timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=dt_timezone.utc)


class TaskModel(Base):
    __tablename__ = 'tasks'
    __table_args__ = (
        CheckConstraint("type IN ('event', 'schedule')", name='ck_tasks_type'),
        CheckConstraint("status IN ('pending', 'running', 'paused')", name='ck_tasks_status'),
        Index('idx_tasks_status', 'status'),
        Index('idx_tasks_next_run_at', 'next_run_at'),
        Index('idx_tasks_type', 'type'),
    )

    id = Column(String, primary_key=True)
    name = Column(String)
    type = Column(String, nullable=False)
    preset = Column(String)
    cron = Column(String)
    at = Column(String)
    after = Column(String)
    timezone = Column(String)
    next_run_at = Column(UTCDateTime)
    last_run_at = Column(UTCDateTime)
    on_event = Column(String)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=1)
    rate_count = Column(Integer, nullable=False, default=0)
    rate_window = Column(UTCDateTime)
    status = Column(String, nullable=False, default=TaskStatus.PENDING.value)
    is_paused = Column(Boolean, nullable=False, default=False)
    # 'metadata' is reserved on declarative classes
    meta = Column('metadata', Text)
    created_at = Column(UTCDateTime, nullable=False)

class TaskExecutionModel(Base):
    __tablename__ = 'task_executions'
    __table_args__ = (
        CheckConstraint("status IN ('success', 'failed', 'running')", name='ck_task_executions_status'),
        Index('idx_task_executions_task_id', 'task_id'),
    )

    id = Column(String, primary_key=True)
    task_id = Column(String, ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False)
    status = Column(String, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime)
    error = Column(Text)
    attempt = Column(Integer, nullable=False)


class SqlAlchemyStorage(TaskStorage):
    def __init__(self, db_url: str):
        if ":memory:" in db_url:
            # every connection to :memory: is a new database, so share one
            self.engine = create_async_engine(
                db_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_async_engine(db_url)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._lock = asyncio.Lock()

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def create_task(self, task: Task) -> str:
        async with self._lock, self.async_session() as session:
            db_task = TaskModel(
                id=task.id,
                name=task.name,
                type=task.type.value,
                preset=task.preset,
                cron=task.cron,
                at=task.at,
                after=task.after,
                timezone=task.timezone,
                next_run_at=task.next_run_at,
                last_run_at=task.last_run_at,
                on_event=task.on_event,
                attempts=task.attempts,
                max_attempts=task.max_attempts,
                rate_count=task.rate_count,
                rate_window=task.rate_window,
                status=task.status.value,
                is_paused=task.is_paused,
                meta=self._encode_metadata(task.metadata),
                created_at=task.created_at,
            )
            session.add(db_task)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise DuplicateTaskError(task.id)
            return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._lock, self.async_session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                return self._db_to_task(db_task)
            return None

    async def update_task(self, task_id: str, **fields: Any) -> bool:
        if not fields:
            return await self.get_task(task_id) is not None
        values = self._encode_fields(TaskModel, fields)
        async with self._lock, self.async_session() as session:
            result = await session.execute(
                update(TaskModel).where(TaskModel.id == task_id).values(values)
            )
            await session.commit()
            return result.rowcount > 0

    async def delete_task(self, task_id: str) -> bool:
        async with self._lock, self.async_session() as session:
            await session.execute(
                delete(TaskExecutionModel).where(TaskExecutionModel.task_id == task_id)
            )
            result = await session.execute(delete(TaskModel).where(TaskModel.id == task_id))
            await session.commit()
            return result.rowcount > 0

    async def list_tasks(self) -> List[Task]:
        return await self._select_tasks()

    async def list_tasks_by_status(self, status: TaskStatus) -> List[Task]:
        return await self._select_tasks(TaskModel.status == TaskStatus(status).value)

    async def list_tasks_by_type(self, task_type: TaskType) -> List[Task]:
        return await self._select_tasks(TaskModel.type == TaskType(task_type).value)

    async def list_pending_tasks(self) -> List[Task]:
        return await self._select_tasks(
            TaskModel.status == TaskStatus.PENDING.value,
            TaskModel.is_paused.is_(False),
        )

    async def create_execution(self, execution: TaskExecution) -> str:
        async with self._lock, self.async_session() as session:
            db_execution = TaskExecutionModel(
                id=execution.id,
                task_id=execution.task_id,
                status=execution.status.value,
                started_at=execution.started_at,
                completed_at=execution.completed_at,
                error=execution.error,
                attempt=execution.attempt,
            )
            session.add(db_execution)
            await session.commit()
            return execution.id

    async def update_execution(self, execution_id: str, **fields: Any) -> bool:
        values = self._encode_fields(TaskExecutionModel, fields)
        async with self._lock, self.async_session() as session:
            result = await session.execute(
                update(TaskExecutionModel)
                .where(TaskExecutionModel.id == execution_id)
                .values(values)
            )
            await session.commit()
            return result.rowcount > 0

    async def list_executions(self, task_id: str) -> List[TaskExecution]:
        async with self._lock, self.async_session() as session:
            result = await session.execute(
                select(TaskExecutionModel)
                .filter_by(task_id=task_id)
                .order_by(TaskExecutionModel.started_at.desc())
            )
            return [self._db_to_execution(db_execution) for db_execution in result.scalars()]

    async def count_executions_since(self, task_id: str, since: datetime) -> int:
        async with self._lock, self.async_session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TaskExecutionModel)
                .where(
                    TaskExecutionModel.task_id == task_id,
                    TaskExecutionModel.started_at >= since,
                )
            )
            return result.scalar_one()

    async def _select_tasks(self, *criteria) -> List[Task]:
        async with self._lock, self.async_session() as session:
            result = await session.execute(
                select(TaskModel).where(*criteria).order_by(TaskModel.created_at)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    def _encode_fields(self, model: Type[Base], fields: Dict[str, Any]) -> Dict[Any, Any]:
        values: Dict[Any, Any] = {}
        for key, value in fields.items():
            attribute = 'meta' if key == 'metadata' else key
            if attribute == 'id' or not hasattr(model, attribute):
                raise ValueError(f"Cannot update field '{key}' of {model.__tablename__}")
            if key == 'metadata':
                value = self._encode_metadata(value)
            elif isinstance(value, Enum):
                value = value.value
            values[getattr(model, attribute)] = value
        return values

    @staticmethod
    def _encode_metadata(metadata: Optional[Dict[str, Any]]) -> Optional[str]:
        return json.dumps(metadata) if metadata is not None else None

    def _db_to_task(self, db_task: TaskModel) -> Task:
        return Task(
            id=db_task.id,
            name=db_task.name,
            type=TaskType(db_task.type),
            preset=db_task.preset,
            cron=db_task.cron,
            at=db_task.at,
            after=db_task.after,
            timezone=db_task.timezone,
            next_run_at=db_task.next_run_at,
            last_run_at=db_task.last_run_at,
            on_event=db_task.on_event,
            attempts=db_task.attempts,
            max_attempts=db_task.max_attempts,
            rate_count=db_task.rate_count,
            rate_window=db_task.rate_window,
            status=TaskStatus(db_task.status),
            is_paused=bool(db_task.is_paused),
            metadata=json.loads(db_task.meta) if db_task.meta else None,
            created_at=db_task.created_at,
        )

    def _db_to_execution(self, db_execution: TaskExecutionModel) -> TaskExecution:
        return TaskExecution(
            id=db_execution.id,
            task_id=db_execution.task_id,
            status=ExecutionStatus(db_execution.status),
            started_at=db_execution.started_at,
            completed_at=db_execution.completed_at,
            error=db_execution.error,
            attempt=db_execution.attempt,
        )


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__(MEMORY_URL)
