"""Preset Execution Engine: walks a step graph for one run.

The engine keeps a pointer into the validated step graph:

- each step's params are resolved against the execution context
- control actions (if, set, log, prompt, shell, forEach, while, parallel)
  are handled here; every other action is dispatched to the TaskRegistry
- the step's ``onError`` policy decides whether the run stops (stop),
  records the failure and moves on (continue) or records the step as
  skipped (skip)
- ``if`` moves the pointer to ``then`` / ``else``; everything else
  advances to the next main-flow step. The target of the branch not
  taken is passed over for the rest of the run

Step-level failures (expression errors, handler errors, timeouts) are
always captured into a StepResult. Only ValidationError (before the
first step), store failures raised by the persistence hooks, and
cancellation leave ``run()``.

Given the same preset, overrides and handler responses, the sequence of
visited steps and the resulting trace are identical.
"""

import asyncio
import json
import logging
import os
import signal
import time
from typing import Any, Callable, Mapping, Optional

import structlog

from app.config import Settings, get_settings
from core.constants import CONTROL_ACTIONS, OnError, RunStatus, StepStatus, VarType
from core.exceptions import AutomateError, HandlerError, ValidationError
from core.utils import utc_now
from tasks.base_task import TaskResult
from workflow.context import ExecutionContext, RunResult, StepResult
from workflow.expressions import evaluate, evaluate_condition, resolve, resolve_params
from workflow.graph import StepGraph
from workflow.preset import Preset

logger = logging.getLogger(__name__)
preset_logger = structlog.get_logger("automate.preset")

RESERVED_NAMES = frozenset({"vars", "steps", "env"})

_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off"}

Prompter = Callable[[str, Optional[str]], Any]


# ─── Variables ─────────────────────────────────────────────────

def coerce_var(value: Any, var_type: VarType) -> Any:
    """Coerce an override to its declared type.

    Raises:
        ValueError: The value cannot represent the declared type
    """
    if value is None:
        return None
    if var_type == VarType.NUMBER:
        if isinstance(value, bool):
            raise ValueError(f"expected a number, got {value!r}")
        if isinstance(value, (int, float)):
            return value
        number = float(str(value).strip())
        return int(number) if number.is_integer() and "." not in str(value) else number
    if var_type == VarType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
        raise ValueError(f"expected a boolean, got {value!r}")
    return value if isinstance(value, str) else str(value)


def missing_required_vars(preset: Preset, overrides: Optional[Mapping[str, Any]] = None) -> list[str]:
    """Declared vars that are required but have neither a default nor an override."""
    overrides = overrides or {}
    return [
        name for name, var in preset.vars.items()
        if name not in overrides and var.default is None and var.is_required
    ]


def build_context(
    preset: Preset,
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ExecutionContext:
    """Initial context: var defaults, then typed overrides, then an env snapshot.

    Raises:
        ValidationError: Bad override type or missing required var
    """
    overrides = dict(overrides or {})
    values: dict[str, Any] = {}
    problems = []

    for name, var in preset.vars.items():
        if name in overrides:
            try:
                values[name] = coerce_var(overrides.pop(name), var.type)
            except ValueError as e:
                problems.append(f"var '{name}': {e}")
        elif var.default is not None:
            values[name] = var.default
        elif var.is_required:
            problems.append(f"var '{name}' is required ({var.description or var.type.value})")
        else:
            values[name] = None

    # Undeclared overrides pass through untyped
    values.update(overrides)

    if problems:
        raise ValidationError(f"Invalid variables for preset '{preset.name}'", problems)

    return ExecutionContext(vars=values, env=dict(os.environ if env is None else env))


def _to_step_result(step, task_result: TaskResult) -> StepResult:
    return StepResult(
        step_id=step.id,
        status=task_result.status,
        output=task_result.output,
        error=task_result.error,
        exit_code=task_result.exit_code,
        name=step.name,
        action=step.action,
    )


def _parse_stdout(text: str) -> Any:
    if not text:
        return ""
    try:
        return json.loads(text)
    except ValueError:
        return text


# ─── Step Executor ─────────────────────────────────────────────

class StepExecutor:
    """Executes single steps against a context.

    Never records into the context itself; callers decide where a
    result goes (the run trace, a loop aggregate, a parallel group).
    """

    def __init__(
        self,
        graph: StepGraph,
        task_registry,
        settings: Settings,
        interactive: bool = False,
        prompter: Optional[Prompter] = None,
    ):
        self._graph = graph
        self._task_registry = task_registry
        self._settings = settings
        self._interactive = interactive
        self._prompter = prompter

    async def execute_step(self, step, ctx: ExecutionContext) -> StepResult:
        """Execute one step and apply its skip policy.

        Returns:
            StepResult; never raises for step-level failures
        """
        started = time.monotonic()
        try:
            if step.action == "if":
                task_result = TaskResult.ok(evaluate_condition(step.condition, ctx))
            elif step.action == "parallel":
                raise HandlerError("parallel groups can only run in the main flow")
            elif step.action in CONTROL_ACTIONS:
                handler = getattr(self, f"_execute_{step.action.lower()}")
                task_result = await handler(step, ctx)
            else:
                task_result = await self._dispatch(step, ctx)
        except AutomateError as e:
            task_result = TaskResult.fail(e.message, exit_code=getattr(e, "exit_code", None))
        except Exception as e:
            logger.error(f"Step {step.id} raised: {e}", exc_info=True)
            task_result = TaskResult.fail(f"{type(e).__name__}: {e}")

        result = _to_step_result(step, task_result)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return self._apply_skip_policy(step, result)

    @staticmethod
    def _apply_skip_policy(step, result: StepResult) -> StepResult:
        if result.status == StepStatus.ERROR:
            logger.warning(f"Step {step.id} failed (onError={step.on_error.value}): {result.error}")
            if step.on_error == OnError.SKIP:
                result.status = StepStatus.SKIPPED
                result.error = None
        return result

    async def _dispatch(self, step, ctx: ExecutionContext) -> TaskResult:
        if self._task_registry is None:
            raise HandlerError(f"No handler registry configured for action '{step.action}'")
        params = resolve_params(step.params, ctx)
        return await self._task_registry.execute(step.action, params, interactive=step.interactive)

    # ─── Built-ins ─────────────────────────────────────────────

    async def _execute_set(self, step, ctx: ExecutionContext) -> TaskResult:
        """Merge resolved params into ``ctx.vars``."""
        values = resolve_params(step.params, ctx)
        ctx.vars.update(values)
        return TaskResult.ok(values)

    async def _execute_log(self, step, ctx: ExecutionContext) -> TaskResult:
        params = resolve_params(step.params, ctx)
        message = params.get("message", "")
        message = message if isinstance(message, str) else json.dumps(message, default=str)
        level = str(params.get("level", "info")).lower()
        log = getattr(preset_logger, level, preset_logger.info)
        log(message, step=step.id)
        return TaskResult.ok(message)

    async def _execute_prompt(self, step, ctx: ExecutionContext) -> TaskResult:
        params = resolve_params(step.params, ctx)
        message = str(params.get("message") or "Enter value:")
        default = params.get("default")
        default = None if default is None else str(default)

        if not self._interactive or self._prompter is None:
            if default is None:
                raise HandlerError(f"Cannot prompt '{message}' without an interactive terminal")
            return TaskResult.ok(default)
        return TaskResult.ok(self._prompter(message, default))

    async def _execute_shell(self, step, ctx: ExecutionContext) -> TaskResult:
        """Run ``bash -c command``; stdout is parsed as JSON when possible."""
        params = resolve_params(step.params, ctx)
        command = params.get("command") or params.get("cmd")
        if not command:
            raise HandlerError(f"Step '{step.id}': 'shell' requires a command param")

        timeout = float(params.get("timeout") or self._settings.SHELL_TIMEOUT)
        env = {**os.environ, **{str(k): str(v) for k, v in (params.get("env") or {}).items()}}
        inherit_stdin = step.interactive and self._interactive

        process = await asyncio.create_subprocess_exec(
            "bash", "-c", str(command),
            stdin=None if inherit_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=params.get("cwd") or None,
            env=env,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            raise HandlerError(f"Command timed out after {timeout:g}s")
        except asyncio.CancelledError:
            self._kill(process)
            raise

        stdout_text = stdout.decode("utf-8", errors="replace").strip()
        stderr_text = stderr.decode("utf-8", errors="replace").strip()
        output = _parse_stdout(stdout_text)

        if process.returncode != 0:
            return TaskResult.fail(
                stderr_text or f"Exit code: {process.returncode}",
                output=output,
                exit_code=process.returncode,
            )
        return TaskResult(StepStatus.SUCCESS, output=output, exit_code=0)

    @staticmethod
    def _kill(process) -> None:
        """Kill the whole process group spawned for a shell step."""
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    # ─── Loops ─────────────────────────────────────────────────

    @staticmethod
    def _loop_name(value: Any, default: str) -> str:
        name = default if value is None else str(value)
        if not name.isidentifier() or name in RESERVED_NAMES:
            raise HandlerError(f"Invalid loop variable name '{name}'")
        return name

    async def _execute_foreach(self, step, ctx: ExecutionContext) -> TaskResult:
        """Run the body once per item with at most ``concurrency`` in flight."""
        params = step.params
        items = params.get("items")
        if isinstance(items, str) and "{{" not in items:
            items = evaluate(items, ctx)
        else:
            items = resolve_params(items, ctx)
        if not isinstance(items, list):
            raise HandlerError(f"forEach items did not resolve to a list: {params.get('items')!r}")

        item_name = self._loop_name(resolve(params.get("as"), ctx), "item")
        index_name = self._loop_name(resolve(params.get("indexAs"), ctx), "index")
        concurrency = max(1, int(resolve(params.get("concurrency", 1), ctx) or 1))
        body = self._graph.body_of(step.id)
        slots = asyncio.Semaphore(concurrency)

        async def _iteration(index: int, item: Any) -> StepResult:
            async with slots:
                child = ctx.child({item_name: item, index_name: index})
                return await self.execute_step(body, child)

        results = await asyncio.gather(*(_iteration(i, item) for i, item in enumerate(items)))

        failures = sum(1 for r in results if r.status == StepStatus.ERROR)
        output = {
            "count": len(items),
            "failures": failures,
            "results": [r.output for r in results],
        }
        if failures:
            return TaskResult.fail(f"{failures}/{len(items)} iterations failed", output=output)
        return TaskResult.ok(output)

    async def _execute_while(self, step, ctx: ExecutionContext) -> TaskResult:
        """Repeat the body while the condition holds, up to ``maxIterations``.

        The loop scope keeps its own copy of vars across iterations, so a
        ``set`` body can advance a counter the condition reads.
        """
        params = step.params
        limit = resolve(params.get("maxIterations"), ctx)
        max_iterations = int(limit) if limit is not None else self._settings.WHILE_MAX_ITERATIONS
        if max_iterations <= 0:
            raise HandlerError(f"maxIterations must be positive, got {max_iterations}")

        body = self._graph.body_of(step.id)
        scope = ctx.child({"index": 0, "last": None})
        results: list[StepResult] = []
        stop_reason = "condition"

        while True:
            if len(results) >= max_iterations:
                stop_reason = "maxIterations"
                logger.warning(f"Step {step.id} stopped after {max_iterations} iterations")
                break
            scope.locals["index"] = len(results)
            if not evaluate_condition(params.get("condition"), scope):
                break
            result = await self.execute_step(body, scope)
            results.append(result)
            scope.locals["last"] = result.output
            if result.status == StepStatus.ERROR and step.on_error != OnError.CONTINUE:
                stop_reason = "failure"
                break

        failures = sum(1 for r in results if r.status == StepStatus.ERROR)
        output = {
            "iterations": len(results),
            "failures": failures,
            "results": [r.output for r in results],
            "stopReason": stop_reason,
        }
        if failures:
            return TaskResult.fail(f"{failures} iterations failed", output=output)
        return TaskResult.ok(output)

    # ─── Parallel ──────────────────────────────────────────────

    async def execute_parallel(self, step, ctx: ExecutionContext) -> list[StepResult]:
        """Run a parallel group.

        Each member gets an isolated view of ``ctx``. Returns the member
        results in declared order followed by the group's own result.
        Under group ``onError: stop`` the first failure cancels members
        still running; cancelled members produce no result.
        """
        started = time.monotonic()
        members = self._graph.parallel_members(step.id)
        policy = str(step.params.get("onError", "stop"))
        limit = step.params.get("concurrency")
        slots = asyncio.Semaphore(max(1, int(resolve(limit, ctx))) if limit else len(members))

        async def _member(member) -> StepResult:
            async with slots:
                return await self.execute_step(member, ctx.child())

        tasks = [asyncio.ensure_future(_member(m)) for m in members]
        try:
            if policy == "continue":
                await asyncio.gather(*tasks)
            else:
                pending = set(tasks)
                while pending:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    if any(t.result().status == StepStatus.ERROR for t in done):
                        for task in pending:
                            task.cancel()
                        await asyncio.gather(*pending, return_exceptions=True)
                        break
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        results: list[StepResult] = []
        cancelled: list[str] = []
        for member, task in zip(members, tasks):
            if task.cancelled():
                cancelled.append(member.id)
            else:
                results.append(task.result())

        failures = [r.step_id for r in results if r.status == StepStatus.ERROR]
        output = {
            "completed": [r.step_id for r in results],
            "failures": len(failures),
            "cancelled": cancelled,
        }
        if failures:
            group = TaskResult.fail(f"{len(failures)}/{len(members)} parallel steps failed: {', '.join(failures)}", output=output)
        else:
            group = TaskResult.ok(output)

        aggregate = _to_step_result(step, group)
        aggregate.duration_ms = int((time.monotonic() - started) * 1000)
        return results + [self._apply_skip_policy(step, aggregate)]


# ─── Preset Engine ─────────────────────────────────────────────

class PresetEngine:
    """Runs presets.

    Hooks (all async, all optional):
        on_run_start(run): before the first step
        on_step_complete(run, result): after each result enters the trace
        on_run_complete(run): after the run reaches a terminal status,
            including cancellation
    """

    def __init__(
        self,
        task_registry=None,
        on_run_start: Optional[Callable] = None,
        on_step_complete: Optional[Callable] = None,
        on_run_complete: Optional[Callable] = None,
        interactive: bool = False,
        prompter: Optional[Prompter] = None,
        settings: Optional[Settings] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self._task_registry = task_registry
        self._on_run_start = on_run_start
        self._on_step_complete = on_step_complete
        self._on_run_complete = on_run_complete
        self._interactive = interactive
        self._prompter = prompter
        self._settings = settings or get_settings()
        self._env = env

    async def run(
        self,
        preset: Preset,
        overrides: Optional[Mapping[str, Any]] = None,
        dry_run: bool = False,
    ) -> RunResult:
        """Execute a preset and return its terminal trace.

        Raises:
            ValidationError: Invalid graph or variables (before any step)
            asyncio.CancelledError: After recording the run as cancelled
        """
        graph = preset.graph
        ctx = build_context(preset, overrides, env=self._env)
        run = RunResult(
            preset_name=preset.name,
            status=RunStatus.RUNNING,
            started_at=utc_now(),
            dry_run=dry_run,
        )

        if self._on_run_start:
            await self._on_run_start(run)

        logger.info(f"Run of preset '{preset.name}' started ({len(graph.main_flow)} steps, dry_run={dry_run})")
        try:
            if dry_run:
                await self._walk_dry(graph, run)
            else:
                await self._walk(graph, ctx, run)
        except asyncio.CancelledError:
            run.status = RunStatus.CANCELLED
            run.error = "Run cancelled"
            await self._finish(run, ctx)
            raise

        if run.status == RunStatus.RUNNING:
            run.status = RunStatus.SUCCESS
        await self._finish(run, ctx)
        return run

    async def _finish(self, run: RunResult, ctx: ExecutionContext) -> None:
        run.finished_at = utc_now()
        run.vars = dict(ctx.vars)
        logger.info(f"Run of preset '{run.preset_name}' finished: {run.status.value} in {run.duration_ms}ms")
        if self._on_run_complete:
            await self._on_run_complete(run)

    async def _emit(self, run: RunResult, ctx: ExecutionContext, result: StepResult) -> None:
        ctx.record(result)
        run.steps.append(result)
        if self._on_step_complete:
            await self._on_step_complete(run, result)

    async def _walk(self, graph: StepGraph, ctx: ExecutionContext, run: RunResult) -> None:
        executor = StepExecutor(
            graph,
            self._task_registry,
            self._settings,
            interactive=self._interactive,
            prompter=self._prompter,
        )
        pointer = graph.entry
        # Targets of branches not taken are never visited in this run
        excluded: set[str] = set()

        while pointer is not None:
            step = graph.get(pointer)
            if step.action == "parallel":
                results = await executor.execute_parallel(step, ctx)
            else:
                results = [await executor.execute_step(step, ctx)]

            for result in results:
                await self._emit(run, ctx, result)

            result = results[-1]
            if result.status == StepStatus.ERROR and step.on_error == OnError.STOP:
                run.status = RunStatus.ERROR
                run.error = f"Step '{step.id}' failed: {result.error}"
                return

            pointer = self._next_pointer(graph, step, result, excluded)

    @staticmethod
    def _next_pointer(graph: StepGraph, step, result: StepResult, excluded: set[str]) -> Optional[str]:
        if step.action == "if" and result.status == StepStatus.SUCCESS:
            taken = bool(result.output)
            untaken = graph.untaken_branch(step, taken)
            if untaken:
                excluded.add(untaken)
            target = step.then if taken else step.else_
            if target:
                excluded.discard(target)
                return target
        return graph.next_id(step.id, skip=excluded)

    async def _walk_dry(self, graph: StepGraph, run: RunResult) -> None:
        """Record every main-flow step as skipped without executing anything."""
        ctx = ExecutionContext()
        for step_id in graph.main_flow:
            step = graph.get(step_id)
            detail = f"[dry-run] {step.action}"
            if step.action == "parallel":
                detail += f" ({', '.join(step.params.get('steps', []))})"
            elif step.action == "if":
                detail += f" {step.condition} -> then={step.then or '-'} else={step.else_ or '-'}"
            await self._emit(run, ctx, StepResult(
                step_id=step.id,
                status=StepStatus.SKIPPED,
                output=detail,
                name=step.name,
                action=step.action,
            ))
