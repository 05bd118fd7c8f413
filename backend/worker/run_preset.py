"""Shared helper to execute a preset and persist its run.

Both the CLI (``automate run`` / ``automate task run``) and the scheduler
daemon need to run the PresetEngine against the Run Store. This module
provides a single entry point that:

1. Creates the run record before the first step
2. Appends each StepResult as it enters the trace
3. Finalizes the run, including cancelled runs
4. Records presets that fail to load as error runs, so scheduled
   failures show up in history

Usage::

    runner = PresetRunner(get_session_factory())
    result = await runner.run(preset, overrides={"city": "Sofia"})
"""

import logging
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from core.constants import RunStatus, TriggerType
from core.exceptions import NotFoundError, ValidationError
from core.utils import utc_now
from db.models.task import Task
from services.run_service import RunService
from workflow.context import RunResult, StepResult
from workflow.engine import PresetEngine, Prompter
from workflow.preset import Preset, load_preset

logger = logging.getLogger(__name__)


class PresetRunner:
    """Runs presets through the engine with the Run Store as its hook.

    Each hook opens its own short session so a long run never holds a
    write transaction on the store.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        task_registry=None,
        settings: Optional[Settings] = None,
        interactive: bool = False,
        prompter: Optional[Prompter] = None,
        on_step: Optional[Callable[[RunResult, StepResult], Any]] = None,
    ):
        self._session_factory = session_factory
        self._task_registry = task_registry
        self._settings = settings or get_settings()
        self._interactive = interactive
        self._prompter = prompter
        self._on_step = on_step

    def _engine(self, task_id: Optional[str], trigger_type: TriggerType) -> PresetEngine:
        async def on_run_start(run: RunResult) -> None:
            async with self._session_factory() as session:
                record = await RunService(session, self._settings.OUTPUT_MAX_CHARS).start_run(
                    run.preset_name,
                    task_id=task_id,
                    trigger_type=trigger_type,
                    started_at=run.started_at,
                )
            run.run_id = record.id
            logger.info(f"[run-preset] Run {run.run_id} of '{run.preset_name}' started ({trigger_type.value})")

        async def on_step_complete(run: RunResult, result: StepResult) -> None:
            async with self._session_factory() as session:
                await RunService(session, self._settings.OUTPUT_MAX_CHARS).record_step(run.run_id, result)
            if self._on_step:
                self._on_step(run, result)

        async def on_run_complete(run: RunResult) -> None:
            async with self._session_factory() as session:
                await RunService(session).finish_run(
                    run.run_id, run.status, error=run.error, finished_at=run.finished_at,
                )
            logger.info(f"[run-preset] Run {run.run_id}: {run.status.value} in {run.duration_ms}ms")

        return PresetEngine(
            task_registry=self._task_registry,
            on_run_start=on_run_start,
            on_step_complete=on_step_complete,
            on_run_complete=on_run_complete,
            interactive=self._interactive,
            prompter=self._prompter,
            settings=self._settings,
        )

    async def run(
        self,
        preset: Preset,
        overrides: Optional[Mapping[str, Any]] = None,
        task_id: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
        dry_run: bool = False,
    ) -> RunResult:
        """Execute a preset. Dry runs are never persisted.

        Raises:
            ValidationError: Bad variables, before a run record exists
            StoreError: The store failed mid-run
        """
        if dry_run:
            engine = PresetEngine(task_registry=self._task_registry, settings=self._settings, on_step_complete=self._dry_step)
            return await engine.run(preset, overrides, dry_run=True)
        return await self._engine(task_id, trigger_type).run(preset, overrides)

    async def _dry_step(self, run: RunResult, result: StepResult) -> None:
        if self._on_step:
            self._on_step(run, result)

    async def run_task(self, task: Task, trigger_type: TriggerType = TriggerType.SCHEDULE) -> RunResult:
        """Load a task's preset and run it with the task's overrides.

        A preset that cannot be loaded, or variables that do not
        validate, still produce an ``error`` run linked to the task.
        """
        try:
            preset = load_preset(task.preset_ref, self._settings.presets_path)
            return await self.run(
                preset,
                overrides=task.var_overrides or {},
                task_id=task.id,
                trigger_type=trigger_type,
            )
        except (NotFoundError, ValidationError) as e:
            logger.error(f"[run-preset] Task '{task.name}' could not start: {e.message}")
            return await self.record_failure(task.preset_ref, e.message, task_id=task.id, trigger_type=trigger_type)

    async def record_failure(
        self,
        preset_name: str,
        error: str,
        task_id: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> RunResult:
        """Persist a run that failed before its first step."""
        now = utc_now()
        async with self._session_factory() as session:
            service = RunService(session)
            record = await service.start_run(preset_name, task_id=task_id, trigger_type=trigger_type, started_at=now)
            await service.finish_run(record.id, RunStatus.ERROR, error=error, finished_at=now)
        return RunResult(
            preset_name=preset_name,
            status=RunStatus.ERROR,
            started_at=now,
            finished_at=now,
            error=error,
            run_id=record.id,
        )

