"""Shared pytest fixtures for the automate test suite.

Provides:
- Settings pointed at a temporary data directory
- A file-backed async SQLite store with all tables
- Session factory / session fixtures
- A scripted handler registry that records calls and concurrency
- A preset builder
"""

import asyncio
import os
from typing import Any, AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

# Override settings BEFORE any app imports
os.environ.setdefault("AUTOMATE_LOG_LEVEL", "WARNING")

from app.config import Settings  # noqa: E402
from db.base import Base  # noqa: E402
from db.database import create_db_engine, create_session_factory  # noqa: E402
from tasks.base_task import TaskResult  # noqa: E402
from workflow.preset import Preset, parse_preset  # noqa: E402


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated to a per-test data directory with short timeouts."""
    return Settings(
        DATA_DIR=str(tmp_path / "data"),
        DAEMON_POLL_INTERVAL=0.05,
        DAEMON_SHUTDOWN_GRACE=0.5,
        SHELL_TIMEOUT=10,
        WHILE_MAX_ITERATIONS=10,
        HTTP_TIMEOUT=5,
    )


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(settings):
    """Async engine over a SQLite file in the test's data directory."""
    settings.data_path.mkdir(parents=True, exist_ok=True)
    engine = create_db_engine(settings=settings)

    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Handler registry double
# ---------------------------------------------------------------------------

class FakeRegistry:
    """Stands in for TaskRegistry.

    ``responses`` maps an action to a TaskResult, an exception to raise,
    or a callable ``(params) -> TaskResult``. Unscripted actions succeed
    and echo their params.
    """

    def __init__(self, responses: Optional[dict[str, Any]] = None, delay: float = 0.0):
        self.responses = responses or {}
        self.delay = delay
        self.calls: list[tuple[str, dict]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def execute(self, action: str, params: dict, interactive: bool = False) -> TaskResult:
        self.calls.append((action, params))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses.get(action, TaskResult.ok(params))
            if callable(response):
                response = response(params)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1

    def actions(self) -> list[str]:
        return [action for action, _ in self.calls]


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


# ---------------------------------------------------------------------------
# Preset builder
# ---------------------------------------------------------------------------

@pytest.fixture
def make_preset() -> Callable[..., Preset]:
    """Build a validated preset from step dicts."""

    def _make(*steps: dict, vars: Optional[dict] = None, name: str = "test-preset", **extra) -> Preset:
        return parse_preset({"name": name, "vars": vars or {}, "steps": list(steps), **extra})

    return _make
