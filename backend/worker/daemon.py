"""Scheduler daemon: polls the Task Store and runs due tasks.

A single long-lived process runs one poll loop. Each tick finds enabled
tasks whose ``next_run_at`` has passed, claims each one atomically in
the store (so a CLI ``task run`` or a second daemon cannot double-fire
it) and launches its run as an independent asyncio task, so a slow
preset never holds up the tick for the others.

Important: all datetime comparisons use NAIVE UTC to match the stored
columns. ``next_run_utc`` also returns naive UTC.
"""

import asyncio
import logging
import os
import signal
from collections import defaultdict
from pathlib import Path
from typing import Any, Optional

import psutil
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_settings
from core.constants import DaemonState, TriggerType
from core.exceptions import AutomateError, DaemonFatalError, StoreError
from core.utils import utc_now
from db.database import create_db_engine, create_session_factory, init_db
from services.run_service import RunService
from services.task_service import TaskService
from worker.run_preset import PresetRunner
from workflow.context import RunResult

logger = logging.getLogger(__name__)

MIN_SLEEP = 1.0


# ── PID lock ────────────────────────────────────────────────────

def read_lock(path: Path) -> Optional[int]:
    """PID of the live daemon holding the lock, or None."""
    try:
        pid = int(path.read_text().strip())
    except (OSError, ValueError):
        return None
    return pid if psutil.pid_exists(pid) else None


def acquire_lock(path: Path) -> None:
    """Write our PID to the lock file, replacing a stale one.

    Raises:
        DaemonFatalError: A live daemon already holds the lock
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(2):
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = read_lock(path)
            if holder is not None and holder != os.getpid():
                raise DaemonFatalError(f"Daemon already running (pid {holder}, lock {path})")
            logger.warning(f"[daemon] Removing stale lock {path}")
            path.unlink(missing_ok=True)
            continue
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        return
    raise DaemonFatalError(f"Could not acquire daemon lock {path}")


def release_lock(path: Path) -> None:
    try:
        if int(path.read_text().strip()) == os.getpid():
            path.unlink()
    except (OSError, ValueError):
        pass


def stop_daemon(settings: Optional[Settings] = None) -> Optional[int]:
    """Send SIGTERM to the running daemon.

    Returns:
        The signalled PID, or None when no daemon is running
    """
    settings = settings or get_settings()
    pid = read_lock(settings.lock_path)
    if pid is None:
        return None
    os.kill(pid, signal.SIGTERM)
    return pid


# ── Daemon ──────────────────────────────────────────────────────

class SchedulerDaemon:
    """Poll loop over the Task Store.

    Usage::

        daemon = SchedulerDaemon()
        await daemon.start()   # returns after SIGINT/SIGTERM or stop()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        task_registry=None,
        runner: Optional[PresetRunner] = None,
    ):
        self.settings = settings or get_settings()
        self._owns_engine = engine is None
        self._engine = engine or create_db_engine(settings=self.settings)
        self.session_factory = create_session_factory(self._engine)
        if runner is None:
            if task_registry is None:
                from tasks.registry import get_task_registry

                task_registry = get_task_registry()
            runner = PresetRunner(self.session_factory, task_registry=task_registry, settings=self.settings)
        self.runner = runner

        self.state = DaemonState.STOPPED
        self._stop_event: Optional[asyncio.Event] = None
        self._in_flight: dict[str, asyncio.Task] = {}
        self._task_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._next_due = None

    # ── Lifecycle ───────────────────────────────────────────────

    async def open_store(self) -> None:
        """Create missing tables and close runs orphaned by a previous process.

        Raises:
            DaemonFatalError: The store cannot be opened
        """
        try:
            if self._owns_engine and self.settings.database_url.startswith("sqlite") and not self.settings.DATABASE_URL:
                self.settings.data_path.mkdir(parents=True, exist_ok=True)
            await init_db(self._engine)
            async with self.session_factory() as session:
                closed = await RunService(session).reconcile_orphans()
        except (SQLAlchemyError, StoreError, OSError) as e:
            raise DaemonFatalError(f"Cannot open store {self.settings.database_url}: {e}") from e
        if closed:
            logger.warning(f"[daemon] Marked {closed} orphaned run(s) as interrupted")

    async def start(self, install_signals: bool = True) -> None:
        """Acquire the lock, open the store and poll until stopped.

        Raises:
            DaemonFatalError: Lock held by a live daemon or store unavailable
        """
        lock = self.settings.lock_path
        acquire_lock(lock)
        self._stop_event = asyncio.Event()
        try:
            await self.open_store()
            if install_signals:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, self.request_stop)

            self.state = DaemonState.RUNNING
            logger.info(
                f"[daemon] Started (pid {os.getpid()}, poll every {self.settings.DAEMON_POLL_INTERVAL:g}s, "
                f"store {self.settings.database_url})"
            )
            await self._poll_loop()
            await self._drain()
        finally:
            if install_signals:
                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.remove_signal_handler(sig)
            release_lock(lock)
            if self._owns_engine:
                await self._engine.dispose()
            self.state = DaemonState.STOPPED
            logger.info("[daemon] Stopped")

    def request_stop(self) -> None:
        """Ask the poll loop to exit after the current tick."""
        if self._stop_event is not None and not self._stop_event.is_set():
            logger.info("[daemon] Stop requested")
            self._stop_event.set()

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._sleep_seconds())
            except asyncio.TimeoutError:
                pass

    def _sleep_seconds(self) -> float:
        """Poll interval, shortened when a task is due sooner."""
        interval = self.settings.DAEMON_POLL_INTERVAL
        if self._next_due is None:
            return interval
        until_due = (self._next_due - utc_now()).total_seconds()
        return min(interval, max(MIN_SLEEP, until_due))

    async def _drain(self) -> None:
        """Give in-flight runs the shutdown grace period, then cancel them."""
        pending = [t for t in self._in_flight.values() if not t.done()]
        if not pending:
            return
        grace = self.settings.DAEMON_SHUTDOWN_GRACE
        logger.info(f"[daemon] Waiting up to {grace:g}s for {len(pending)} run(s)")
        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"[daemon] Cancelled {len(still_running)} run(s) after grace period")
            await asyncio.gather(*still_running, return_exceptions=True)

    # ── Tick ────────────────────────────────────────────────────

    async def tick(self, now=None) -> list[str]:
        """Claim and launch every due task.

        A task that cannot be claimed (bad interval, store error on its
        row) is logged and skipped. Store errors outside the per-task
        loop end the tick; the next tick retries.

        Returns:
            Names of the tasks launched by this tick
        """
        now = now or utc_now()
        launched: list[str] = []
        try:
            async with self.session_factory() as session:
                service = TaskService(session)
                due = await service.due_tasks(now)
                if due:
                    logger.info(f"[daemon] {len(due)} due task(s): " + ", ".join(t.name for t in due))
                for task in due:
                    if task.id in self._in_flight:
                        logger.info(f"[daemon] Task '{task.name}' still running, skipping this tick")
                        continue
                    try:
                        claimed = await service.claim(task, now)
                    except AutomateError as e:
                        logger.error(f"[daemon] Task '{task.name}' not scheduled: {e.message}")
                        continue
                    if not claimed:
                        continue
                    self._launch(task)
                    launched.append(task.name)
                self._next_due = await service.next_due()
        except AutomateError as e:
            logger.error(f"[daemon] Tick failed: {e.message}")
        return launched

    def _launch(self, task) -> asyncio.Task:
        run = asyncio.create_task(self._run_task(task, TriggerType.SCHEDULE), name=f"task:{task.name}")
        self._in_flight[task.id] = run
        run.add_done_callback(lambda _: self._in_flight.pop(task.id, None))
        logger.info(f"[daemon] Launched '{task.name}' (next run {task.next_run_at})")
        return run

    async def _run_task(self, task, trigger_type: TriggerType) -> Optional[RunResult]:
        async with self._task_locks[task.id]:
            try:
                result = await self.runner.run_task(task, trigger_type=trigger_type)
            except AutomateError as e:
                logger.error(f"[daemon] Task '{task.name}' failed to run: {e.message}")
                return None
            except Exception as e:
                logger.error(f"[daemon] Task '{task.name}' crashed: {e}", exc_info=True)
                return None
        logger.info(f"[daemon] Task '{task.name}' run {result.run_id}: {result.status.value}")
        return result

    async def wait_idle(self) -> None:
        """Wait for every launched run to finish."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    # ── Synchronous operations ──────────────────────────────────

    async def run_task_now(self, name: str) -> RunResult:
        """Run a task immediately without moving its ``next_run_at``.

        Raises:
            NotFoundError: No such task
        """
        async with self.session_factory() as session:
            task = await TaskService(session).get_by_name_or_id(name)
        async with self._task_locks[task.id]:
            return await self.runner.run_task(task, trigger_type=TriggerType.MANUAL)

    async def status(self) -> dict[str, Any]:
        """Lock holder and enabled task summary."""
        pid = read_lock(self.settings.lock_path)
        async with self.session_factory() as session:
            service = TaskService(session)
            enabled = await service.list_tasks(enabled=True)
            next_due = await service.next_due()
        return {
            "state": (DaemonState.RUNNING if pid else DaemonState.STOPPED).value,
            "pid": pid,
            "enabledTasks": len(enabled),
            "nextDue": next_due,
            "lockFile": str(self.settings.lock_path),
            "logFile": str(self.settings.log_path),
        }

    async def close(self) -> None:
        """Dispose of an engine this daemon created (for non-daemon use)."""
        if self._owns_engine:
            await self._engine.dispose()
