"""Per-run execution state: step results, the execution context and the run trace."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from core.constants import RunStatus, StepStatus


@dataclass
class StepResult:
    """Result of executing a single step."""
    step_id: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    exit_code: Optional[int] = None
    duration_ms: int = 0
    name: Optional[str] = None
    action: Optional[str] = None

    def as_expression_value(self) -> dict:
        """Shape exposed to expressions as ``steps.<id>``."""
        return {
            "output": self.output,
            "status": self.status.value,
            "duration": self.duration_ms,
            "error": self.error,
            "exitCode": self.exit_code,
        }

    def to_dict(self) -> dict:
        data = {
            "stepId": self.step_id,
            "status": self.status.value,
            "durationMs": self.duration_ms,
            "output": self.output,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        return data


@dataclass
class ExecutionContext:
    """Mutable state of one run.

    ``steps`` only grows, and each step id is written at most once.
    ``locals`` holds loop bindings (``item``, ``index``...) visible to
    expressions alongside ``vars``, ``steps`` and ``env``.
    """

    vars: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    steps: dict[str, StepResult] = field(default_factory=dict)
    locals: dict[str, Any] = field(default_factory=dict)

    def record(self, result: StepResult) -> None:
        """Store a step result; a second write for the same id is a bug in the caller."""
        if result.step_id in self.steps:
            raise RuntimeError(f"Step '{result.step_id}' already has a result in this context")
        self.steps[result.step_id] = result

    def child(self, locals: Optional[dict[str, Any]] = None) -> "ExecutionContext":
        """Create an isolated view for a loop iteration or parallel branch.

        The child sees everything the parent has so far; its own writes
        never reach the parent.
        """
        return ExecutionContext(
            vars=dict(self.vars),
            env=self.env,
            steps=dict(self.steps),
            locals={**self.locals, **(locals or {})},
        )

    def namespace(self) -> dict[str, Any]:
        """Names an expression can see."""
        return {
            **self.locals,
            "vars": self.vars,
            "steps": {sid: r.as_expression_value() for sid, r in self.steps.items()},
            "env": self.env,
        }


@dataclass
class RunResult:
    """Terminal trace of one preset run."""
    preset_name: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    steps: list[StepResult] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    run_id: Optional[int] = None
    dry_run: bool = False

    @property
    def duration_ms(self) -> int:
        if self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def step(self, step_id: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.step_id == step_id:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "runId": self.run_id,
            "preset": self.preset_name,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "durationMs": self.duration_ms,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
        }
