"""Task service: scheduled task CRUD and the daemon's claim operation."""

import re
from datetime import datetime
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import TASK_NAME_PATTERN
from core.exceptions import ConflictError, NotFoundError, ValidationError
from core.utils import utc_now
from db.models.task import Task
from services.base import BaseService, store_errors
from triggers.schedule import next_run_utc, parse_interval

logger = structlog.get_logger(__name__)


class TaskService(BaseService[Task]):
    """Service for scheduled tasks.

    Every write to a task row is a single-row statement so the CLI and
    the daemon can share the store.
    """

    def __init__(self, db: AsyncSession):
        super().__init__(Task, db)

    @store_errors
    async def create_task(
        self,
        name: str,
        preset_ref: str,
        interval_spec: str,
        var_overrides: Optional[dict[str, Any]] = None,
        enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> Task:
        """Create a task due one interval from now.

        Raises:
            ValidationError: Bad name or interval
            ConflictError: A task with this name exists
        """
        if not re.match(TASK_NAME_PATTERN, name or ""):
            raise ValidationError(f"Invalid task name '{name}'", ["use letters, digits, '-' and '_' only"])
        rule = parse_interval(interval_spec)

        if await self.get_by_name(name) is not None:
            raise ConflictError(f"Task '{name}' already exists")

        now = now or utc_now()
        task = await self.create({
            "name": name,
            "preset_ref": preset_ref,
            "interval_spec": rule.describe(),
            "var_overrides": dict(var_overrides or {}),
            "enabled": enabled,
            "next_run_at": next_run_utc(rule, now) if enabled else None,
        })
        logger.info("Task created", task=name, interval=task.interval_spec, next_run_at=str(task.next_run_at))
        return task

    @store_errors
    async def get_by_name(self, name: str) -> Optional[Task]:
        result = await self.db.execute(select(Task).where(Task.name == name))
        return result.scalar_one_or_none()

    async def get_by_name_or_id(self, ref: str) -> Task:
        """Look a task up by name, then by id.

        Raises:
            NotFoundError: No such task
        """
        task = await self.get_by_name(ref)
        if task is None:
            task = await self.get_by_id(ref)
        if task is None:
            raise NotFoundError(f"Task '{ref}' not found")
        return task

    async def list_tasks(self, enabled: Optional[bool] = None) -> Sequence[Task]:
        filters = {"enabled": enabled} if enabled is not None else None
        return await self.list(order_by="name", filters=filters)

    @store_errors
    async def due_tasks(self, now: Optional[datetime] = None) -> Sequence[Task]:
        """Enabled tasks whose ``next_run_at`` has passed, oldest first."""
        now = now or utc_now()
        result = await self.db.execute(
            select(Task)
            .where(Task.enabled == True, Task.next_run_at != None, Task.next_run_at <= now)  # noqa: E712, E711
            .order_by(Task.next_run_at.asc())
        )
        return result.scalars().all()

    @store_errors
    async def next_due(self) -> Optional[datetime]:
        result = await self.db.execute(select(func.min(Task.next_run_at)).where(Task.enabled == True))  # noqa: E712
        return result.scalar()

    @store_errors
    async def claim(self, task: Task, now: Optional[datetime] = None) -> bool:
        """Advance a due task's ``next_run_at`` relative to now.

        Compare-and-set on the ``next_run_at`` value the caller read, so
        two writers racing for the same due slot cannot both win.

        Returns:
            True if this caller owns the run
        """
        now = now or utc_now()
        next_run_at = next_run_utc(task.interval_spec, now)
        result = await self.db.execute(
            update(Task)
            .where(
                Task.id == task.id,
                Task.enabled == True,  # noqa: E712
                Task.next_run_at == task.next_run_at,
            )
            .values(next_run_at=next_run_at, last_run_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            logger.info("Task already claimed", task=task.name)
            return False

        task.next_run_at = next_run_at
        task.last_run_at = now
        return True

    @store_errors
    async def set_enabled(self, name: str, enabled: bool, now: Optional[datetime] = None) -> Task:
        """Enable or disable a task.

        Enabling recomputes ``next_run_at`` from now; repeating the
        current state changes nothing.
        """
        task = await self.get_by_name_or_id(name)
        if task.enabled == enabled:
            return task

        values: dict[str, Any] = {"enabled": enabled, "updated_at": now or utc_now()}
        if enabled:
            values["next_run_at"] = next_run_utc(task.interval_spec, now or utc_now())
        await self.db.execute(
            update(Task).where(Task.id == task.id).values(**values).execution_options(synchronize_session=False)
        )
        await self.db.commit()
        for key, value in values.items():
            setattr(task, key, value)
        logger.info("Task enabled" if enabled else "Task disabled", task=task.name)
        return task

    @store_errors
    async def delete_task(self, name: str) -> Task:
        """Delete a task; its runs stay in history with ``task_id`` cleared."""
        task = await self.get_by_name_or_id(name)
        await self.delete(task)
        await self.db.commit()
        logger.info("Task deleted", task=task.name)
        return task
