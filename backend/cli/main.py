"""automate command line.

    automate run PRESET [--var k=v]... [--dry-run]
    automate actions list [--json]
    automate presets list | validate PRESET
    automate task create|list|show|enable|disable|delete|run|history|run-show
    automate daemon start|stop|status|install|uninstall|tail
"""

import asyncio
import json
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import click
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from core.constants import CONTROL_ACTIONS, RunStatus, StepStatus
from core.exceptions import AutomateError, StoreError
from core.logging_config import setup_logging
from core.utils import format_duration, parse_var_overrides
from db.database import close_db, get_engine, get_session_factory, init_db
from services.run_service import RunService
from services.task_service import TaskService
from worker.daemon import SchedulerDaemon, read_lock, stop_daemon
from worker.run_preset import PresetRunner
from worker.service import follow, install_service, tail_lines, uninstall_service
from workflow.engine import missing_required_vars
from workflow.preset import list_presets, load_preset

EXIT_INTERRUPTED = 130

_STATUS_COLORS = {
    StepStatus.SUCCESS.value: "green",
    StepStatus.ERROR.value: "red",
    StepStatus.SKIPPED.value: "yellow",
    RunStatus.RUNNING.value: "cyan",
    RunStatus.CANCELLED.value: "magenta",
}


# ─── Helpers ──────────────────────────────────────────────────

def _styled(status: str) -> str:
    return click.style(status, fg=_STATUS_COLORS.get(status), bold=True)


def _local(value: Optional[datetime]) -> str:
    """Naive UTC from the store, shown in local time."""
    if value is None:
        return "-"
    return value.replace(tzinfo=timezone.utc).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _preview(value: Any, width: int = 80) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 3] + "..."


def _print_step(run, result) -> None:
    line = f"  {_styled(result.status.value):<18} {result.step_id:<24} {format_duration(result.duration_ms):>8}"
    click.echo(line)
    if result.error:
        click.echo(click.style(f"      {result.error}", fg="red"))
    elif result.output not in (None, ""):
        click.echo(click.style(f"      {_preview(result.output)}", dim=True))


def _print_summary(result) -> None:
    click.echo()
    label = f"Run {result.run_id}" if result.run_id is not None else "Run"
    click.echo(f"{label} {_styled(result.status.value)} in {format_duration(result.duration_ms)} ({len(result.steps)} steps)")
    if result.error:
        click.echo(click.style(result.error, fg="red"))


def _run_exit_code(result) -> int:
    if result.status == RunStatus.CANCELLED:
        return EXIT_INTERRUPTED
    return 0 if result.status == RunStatus.SUCCESS else 1


def _prompt_missing(preset, overrides: dict) -> dict:
    """Ask for required vars on a terminal; otherwise the engine reports them."""
    if not sys.stdin.isatty():
        return {}
    answers = {}
    for name in missing_required_vars(preset, overrides):
        var = preset.vars[name]
        label = f"{name} ({var.description})" if var.description else name
        answers[name] = click.prompt(label)
    return answers


def _prompter(message: str, default: Optional[str]) -> str:
    return click.prompt(message, default=default)


def _with_store(coro_fn):
    """Run ``coro_fn(session_factory)`` with an initialized store."""

    async def _main():
        try:
            try:
                await init_db()
            except (SQLAlchemyError, OSError) as e:
                raise StoreError(f"Cannot open store {get_settings().database_url}: {e}") from e
            return await coro_fn(get_session_factory())
        finally:
            await close_db()

    return asyncio.run(_main())


def _runner(session_factory, echo_steps: bool = True) -> PresetRunner:
    from tasks.registry import get_task_registry

    return PresetRunner(
        session_factory,
        task_registry=get_task_registry(),
        interactive=sys.stdin.isatty(),
        prompter=_prompter,
        on_step=_print_step if echo_steps else None,
    )


class AutomateGroup(click.Group):
    """Maps engine errors to exit codes instead of tracebacks."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except AutomateError as e:
            if ctx.obj and ctx.obj.get("debug"):
                traceback.print_exc()
            click.echo(click.style(f"Error: {e.message}", fg="red"), err=True)
            ctx.exit(1)
        except KeyboardInterrupt:
            click.echo(click.style("Interrupted", fg="yellow"), err=True)
            ctx.exit(EXIT_INTERRUPTED)


# ─── Root ─────────────────────────────────────────────────────

@click.group(cls=AutomateGroup)
@click.option("--debug", is_flag=True, default=False, help="Verbose logging and stack traces")
@click.pass_context
def cli(ctx, debug):
    """automate: run workflow presets now or on a schedule."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    setup_logging(level="DEBUG" if debug else "WARNING")


@cli.command()
@click.argument("preset")
@click.option("--var", "vars_", multiple=True, metavar="KEY=VALUE", help="Variable override (repeatable)")
@click.option("--dry-run", is_flag=True, default=False, help="Show the steps without executing them")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run as JSON")
@click.pass_context
def run(ctx, preset, vars_, dry_run, as_json):
    """Run a preset by name or path."""
    loaded = load_preset(preset, get_settings().presets_path)
    overrides = parse_var_overrides(vars_)
    overrides.update(_prompt_missing(loaded, overrides))

    if not as_json:
        click.echo(f"{'Dry run of' if dry_run else 'Running'} {click.style(loaded.name, bold=True)}")

    async def _execute(session_factory):
        runner = _runner(session_factory, echo_steps=not as_json)
        return await runner.run(loaded, overrides, dry_run=dry_run)

    result = _with_store(_execute)
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        _print_summary(result)
    ctx.exit(_run_exit_code(result))


# ─── Actions ──────────────────────────────────────────────────

@cli.group()
def actions():
    """Inspect the step actions a preset can use."""


@actions.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print handlers with their param schemas")
def actions_list(as_json):
    """List built-in control actions and registered handlers."""
    from tasks.registry import get_task_registry

    handlers = get_task_registry().list_all()
    if as_json:
        click.echo(json.dumps({"control": sorted(CONTROL_ACTIONS), "handlers": handlers}, indent=2))
        return
    click.echo(click.style("control", bold=True))
    click.echo(f"  {', '.join(sorted(CONTROL_ACTIONS))}")
    click.echo(click.style("handlers", bold=True))
    for entry in handlers:
        click.echo(f"  {entry['action']:<12} {entry['display_name']:<16} {entry['description']}")


# ─── Presets ──────────────────────────────────────────────────

@cli.group()
def presets():
    """Inspect preset files."""


@presets.command("list")
def presets_list():
    """List presets in the presets directory."""
    settings = get_settings()
    found = list_presets(settings.presets_path)
    if not found:
        click.echo(f"No presets in {settings.presets_path}")
        return
    for item in found:
        trigger = item["trigger"]
        click.echo(f"{click.style(item['name'], bold=True):<32} {item['steps']:>3} steps  {trigger:<24} {item['file']}")
        if item["description"]:
            click.echo(click.style(f"    {item['description']}", dim=True))


@presets.command("validate")
@click.argument("preset")
def presets_validate(preset):
    """Validate a preset and its step graph."""
    loaded = load_preset(preset, get_settings().presets_path)
    graph = loaded.graph
    click.echo(
        f"{click.style('valid', fg='green', bold=True)} {loaded.name}: "
        f"{len(loaded.steps)} steps, {len(graph.main_flow)} in the main flow"
    )


# ─── Tasks ────────────────────────────────────────────────────

@cli.group()
def task():
    """Manage scheduled tasks."""


@task.command("create")
@click.option("--name", required=True, help="Unique task name")
@click.option("--preset", "preset_ref", required=True, help="Preset name or path")
@click.option("--every", "interval", required=True, help="e.g. '5 minutes', 'day at 09:00'")
@click.option("--var", "vars_", multiple=True, metavar="KEY=VALUE", help="Variable override (repeatable)")
def task_create(name, preset_ref, interval, vars_):
    """Schedule a preset."""
    settings = get_settings()
    preset = load_preset(preset_ref, settings.presets_path)
    if Path(preset_ref).exists():
        preset_ref = str(Path(preset_ref).resolve())
    overrides = parse_var_overrides(vars_)
    spec = interval if interval.lower().startswith("every") else f"every {interval}"

    async def _create(session_factory):
        async with session_factory() as session:
            service = TaskService(session)
            created = await service.create_task(name, preset_ref, spec, overrides)
            await service.commit()
            return created

    created = _with_store(_create)
    click.echo(
        f"Created task {click.style(created.name, bold=True)} ({preset.name}, {created.interval_spec}); "
        f"next run {_local(created.next_run_at)}"
    )


@task.command("list")
def task_list():
    """List scheduled tasks."""

    async def _list(session_factory):
        async with session_factory() as session:
            return await TaskService(session).list_tasks()

    tasks = _with_store(_list)
    if not tasks:
        click.echo("No tasks")
        return
    for item in tasks:
        state = click.style("enabled", fg="green") if item.enabled else click.style("disabled", fg="yellow")
        click.echo(
            f"{click.style(item.name, bold=True):<32} {state:<18} {item.interval_spec:<24} "
            f"next {_local(item.next_run_at) if item.enabled else '-':<20} {item.preset_ref}"
        )


@task.command("show")
@click.argument("name")
def task_show(name):
    """Show a task and its recent runs."""

    async def _show(session_factory):
        async with session_factory() as session:
            found = await TaskService(session).get_by_name_or_id(name)
            runs = await RunService(session).list_runs(limit=5, task_id=found.id)
            return found, runs

    found, runs = _with_store(_show)
    click.echo(click.style(found.name, bold=True))
    click.echo(f"  id:        {found.id}")
    click.echo(f"  preset:    {found.preset_ref}")
    click.echo(f"  interval:  {found.interval_spec}")
    click.echo(f"  enabled:   {found.enabled}")
    click.echo(f"  vars:      {json.dumps(found.var_overrides or {})}")
    click.echo(f"  next run:  {_local(found.next_run_at) if found.enabled else '-'}")
    click.echo(f"  last run:  {_local(found.last_run_at)}")
    if runs:
        click.echo("  recent runs:")
        for item in runs:
            click.echo(f"    #{item.id:<6} {_styled(item.status):<18} {_local(item.started_at)}  {format_duration(item.duration_ms)}")


def _set_enabled(name: str, enabled: bool) -> None:
    async def _apply(session_factory):
        async with session_factory() as session:
            return await TaskService(session).set_enabled(name, enabled)

    updated = _with_store(_apply)
    state = "enabled" if enabled else "disabled"
    suffix = f"; next run {_local(updated.next_run_at)}" if enabled else ""
    click.echo(f"Task {updated.name} {state}{suffix}")


@task.command("enable")
@click.argument("name")
def task_enable(name):
    """Enable a task (reschedules from now)."""
    _set_enabled(name, True)


@task.command("disable")
@click.argument("name")
def task_disable(name):
    """Disable a task."""
    _set_enabled(name, False)


@task.command("delete")
@click.argument("name")
@click.option("--yes", is_flag=True, default=False, help="Do not ask for confirmation")
def task_delete(name, yes):
    """Delete a task. Its run history is kept."""
    if not yes:
        click.confirm(f"Delete task '{name}'?", abort=True)

    async def _delete(session_factory):
        async with session_factory() as session:
            return await TaskService(session).delete_task(name)

    deleted = _with_store(_delete)
    click.echo(f"Deleted task {deleted.name}")


@task.command("run")
@click.argument("name")
@click.pass_context
def task_run(ctx, name):
    """Run a task now without changing its schedule."""

    async def _run_now(session_factory):
        daemon = SchedulerDaemon(engine=get_engine(), runner=_runner(session_factory))
        return await daemon.run_task_now(name)

    result = _with_store(_run_now)
    _print_summary(result)
    ctx.exit(_run_exit_code(result))


@task.command("history")
@click.option("--task", "task_name", default=None, help="Only runs of this task")
@click.option("--limit", default=20, show_default=True, type=int)
def task_history(task_name, limit):
    """Show recent runs."""

    async def _history(session_factory):
        async with session_factory() as session:
            task_id = None
            if task_name:
                task_id = (await TaskService(session).get_by_name_or_id(task_name)).id
            return await RunService(session).list_runs(limit=limit, task_id=task_id)

    runs = _with_store(_history)
    if not runs:
        click.echo("No runs")
        return
    for item in runs:
        click.echo(
            f"#{item.id:<6} {_styled(item.status):<18} {item.preset_name:<24} {item.trigger_type:<9} "
            f"{_local(item.started_at)}  {format_duration(item.duration_ms):>8}"
        )
        if item.error:
            click.echo(click.style(f"        {_preview(item.error, 100)}", fg="red"))


@task.command("run-show")
@click.argument("run_id", type=int)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run as JSON")
def task_run_show(run_id, as_json):
    """Show the steps of a run."""

    async def _get(session_factory):
        async with session_factory() as session:
            return await RunService(session).get_run(run_id)

    found = _with_store(_get)
    if as_json:
        click.echo(json.dumps({
            "runId": found.id,
            "taskId": found.task_id,
            "preset": found.preset_name,
            "trigger": found.trigger_type,
            "status": found.status,
            "startedAt": found.started_at,
            "finishedAt": found.finished_at,
            "durationMs": found.duration_ms,
            "error": found.error,
            "steps": [
                {
                    "seq": s.seq,
                    "stepId": s.step_id,
                    "action": s.action,
                    "status": s.status,
                    "durationMs": s.duration_ms,
                    "output": s.output,
                    "error": s.error,
                    "exitCode": s.exit_code,
                }
                for s in found.steps
            ],
        }, indent=2, default=str))
        return

    click.echo(
        f"Run #{found.id} {_styled(found.status)} {found.preset_name} ({found.trigger_type}) "
        f"started {_local(found.started_at)}, took {format_duration(found.duration_ms)}"
    )
    if found.error:
        click.echo(click.style(found.error, fg="red"))
    for s in found.steps:
        click.echo(f"  {s.seq:>3}. {_styled(s.status):<18} {s.step_id:<24} {s.action or '':<14} {format_duration(s.duration_ms):>8}")
        if s.error:
            click.echo(click.style(f"       {s.error}", fg="red"))
        elif s.output not in (None, ""):
            click.echo(click.style(f"       {_preview(s.output)}", dim=True))


# ─── Daemon ───────────────────────────────────────────────────

@cli.group()
def daemon():
    """Run and manage the scheduler daemon."""


@daemon.command("start")
def daemon_start():
    """Run the scheduler in the foreground until SIGINT/SIGTERM."""
    settings = get_settings()
    settings.ensure_dirs()
    setup_logging(log_file=settings.log_path)
    asyncio.run(SchedulerDaemon(settings).start())


@daemon.command("stop")
def daemon_stop():
    """Stop a running daemon."""
    pid = stop_daemon()
    if pid is None:
        click.echo("Daemon is not running")
        return
    click.echo(f"Sent SIGTERM to daemon (pid {pid})")


@daemon.command("status")
def daemon_status():
    """Show whether the daemon is running and what is scheduled."""

    async def _status(session_factory):
        return await SchedulerDaemon(engine=get_engine(), runner=_runner(session_factory, echo_steps=False)).status()

    info = _with_store(_status)
    if info["pid"]:
        click.echo(f"Daemon {click.style('running', fg='green', bold=True)} (pid {info['pid']})")
    else:
        click.echo(f"Daemon {click.style('stopped', fg='yellow', bold=True)}")
    click.echo(f"  enabled tasks: {info['enabledTasks']}")
    click.echo(f"  next due:      {_local(info['nextDue'])}")
    click.echo(f"  log file:      {info['logFile']}")


@daemon.command("install")
def daemon_install():
    """Install the daemon as a user service (systemd or launchd)."""
    path, command = install_service()
    click.echo(f"Wrote {path}")
    click.echo(f"Enable it with:\n  {command}")


@daemon.command("uninstall")
def daemon_uninstall():
    """Remove the user service file."""
    if read_lock(get_settings().lock_path):
        click.echo("Daemon is still running; stop it with 'automate daemon stop'")
    path = uninstall_service()
    click.echo(f"Removed {path}")


@daemon.command("tail")
@click.option("-n", "lines", default=50, show_default=True, type=int, help="Lines to show")
@click.option("--follow", "-f", "follow_", is_flag=True, default=False, help="Keep printing new lines")
def daemon_tail(lines, follow_):
    """Print the daemon log."""
    path = get_settings().log_path
    for line in tail_lines(path, lines):
        click.echo(line)
    if follow_:
        asyncio.run(follow(path, click.echo))


if __name__ == "__main__":
    cli()
