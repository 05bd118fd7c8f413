"""Run service: the append-only audit trail of preset executions."""

import os
from datetime import datetime
from typing import Optional, Sequence

import psutil
import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config import get_settings
from core.constants import RunStatus, TriggerType
from core.exceptions import NotFoundError
from core.utils import truncate_output, utc_now
from db.models.run import Run, RunStep
from services.base import BaseService, store_errors
from workflow.context import StepResult

logger = structlog.get_logger(__name__)

INTERRUPTED = "interrupted"


class RunService(BaseService[Run]):
    """Service for runs and their step results.

    A run is written three ways only: created as ``running``, appended
    to one StepResult at a time, and finalized once.
    """

    def __init__(self, db: AsyncSession, output_max_chars: Optional[int] = None):
        super().__init__(Run, db)
        self.output_max_chars = output_max_chars or get_settings().OUTPUT_MAX_CHARS

    @store_errors
    async def start_run(
        self,
        preset_name: str,
        task_id: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        started_at: Optional[datetime] = None,
    ) -> Run:
        run = await self.create({
            "preset_name": preset_name,
            "task_id": task_id,
            "trigger_type": TriggerType(trigger_type).value,
            "status": RunStatus.RUNNING.value,
            "started_at": started_at or utc_now(),
            "pid": os.getpid(),
        })
        await self.db.commit()
        logger.debug("Run started", run_id=run.id, preset=preset_name, task_id=task_id)
        return run

    @store_errors
    async def record_step(self, run_id: int, result: StepResult) -> RunStep:
        """Append a StepResult to a run; ``seq`` follows insertion order."""
        seq = await self.db.scalar(
            select(func.coalesce(func.max(RunStep.seq), 0)).where(RunStep.run_id == run_id)
        )
        record = RunStep(
            run_id=run_id,
            seq=seq + 1,
            step_id=result.step_id,
            step_name=result.name,
            action=result.action,
            status=result.status.value,
            duration_ms=result.duration_ms,
            output=truncate_output(result.output, self.output_max_chars),
            error=result.error,
            exit_code=result.exit_code,
        )
        self.db.add(record)
        await self.db.commit()
        return record

    @store_errors
    async def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        error: Optional[str] = None,
        finished_at: Optional[datetime] = None,
    ) -> Run:
        run = await self.get_by_id(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run.status != RunStatus.RUNNING.value:
            logger.warning("Run already finalized", run_id=run_id, status=run.status)
            return run

        run.status = RunStatus(status).value
        run.error = error
        run.finished_at = finished_at or utc_now()
        run.duration_ms = int((run.finished_at - run.started_at).total_seconds() * 1000)
        await self.db.commit()
        logger.debug("Run finished", run_id=run_id, status=run.status)
        return run

    @store_errors
    async def list_runs(self, limit: int = 20, task_id: Optional[str] = None) -> Sequence[Run]:
        """Most recent runs first."""
        query = select(Run).order_by(Run.started_at.desc(), Run.id.desc()).limit(limit)
        if task_id is not None:
            query = query.where(Run.task_id == task_id)
        result = await self.db.execute(query)
        return result.scalars().all()

    @store_errors
    async def get_run(self, run_id: int) -> Run:
        """A run with its step results loaded in ``seq`` order.

        Raises:
            NotFoundError: No such run
        """
        result = await self.db.execute(
            select(Run)
            .where(Run.id == run_id)
            .options(selectinload(Run.steps))
            .execution_options(populate_existing=True)
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    @store_errors
    async def reconcile_orphans(self) -> int:
        """Mark runs left ``running`` by a dead process as interrupted errors.

        Returns:
            Number of runs closed
        """
        result = await self.db.execute(select(Run).where(Run.status == RunStatus.RUNNING.value))
        now = utc_now()
        closed = 0
        for run in result.scalars().all():
            if run.pid is not None and run.pid != os.getpid() and psutil.pid_exists(run.pid):
                continue
            run.status = RunStatus.ERROR.value
            run.error = INTERRUPTED
            run.finished_at = now
            run.duration_ms = int((now - run.started_at).total_seconds() * 1000)
            closed += 1

        if closed:
            await self.db.commit()
            logger.warning("Closed orphaned runs", count=closed)
        return closed
