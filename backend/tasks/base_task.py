"""
Base interface for step handlers.

Every action that is not a control action (http.get, notify, json.parse...)
is implemented by a BaseTask subclass registered in the TaskRegistry.
Handlers never touch the engine's context; everything they produce
comes back through ``TaskResult.output``.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from core.constants import StepStatus

logger = structlog.get_logger(__name__)


@dataclass
class TaskOptions:
    """Per-invocation options passed to a handler."""
    interactive: bool = False
    credentials: Any = None  # CredentialResolver
    http_transport: Any = None  # httpx transport override


class TaskResult:
    """Standardized result from a handler."""

    def __init__(
        self,
        status: StepStatus,
        output: Any = None,
        error: Optional[str] = None,
        exit_code: Optional[int] = None,
        duration_ms: float = 0,
    ):
        self.status = status
        self.output = output
        self.error = error
        self.exit_code = exit_code
        self.duration_ms = duration_ms

    @classmethod
    def ok(cls, output: Any = None) -> "TaskResult":
        return cls(StepStatus.SUCCESS, output=output)

    @classmethod
    def fail(cls, error: str, output: Any = None, exit_code: Optional[int] = None) -> "TaskResult":
        return cls(StepStatus.ERROR, output=output, error=error, exit_code=exit_code)

    @property
    def success(self) -> bool:
        return self.status == StepStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status.value, "output": self.output}
        if self.error is not None:
            data["error"] = self.error
        if self.exit_code is not None:
            data["exitCode"] = self.exit_code
        return data


class BaseTask(ABC):
    """
    Abstract base class for step handlers.

    Subclasses must implement:
    - execute(action, params, opts) -> TaskResult
    - task_type (class property)
    - display_name (class property)
    """

    task_type: str = "base"
    display_name: str = "Base Task"
    description: str = "Abstract base task"

    @abstractmethod
    async def execute(
        self,
        action: str,
        params: Dict[str, Any],
        opts: TaskOptions,
    ) -> TaskResult:
        """
        Execute the action with resolved parameters.

        Args:
            action: Full action name (e.g. ``http.post``)
            params: Parameters with all expressions already resolved
            opts: Invocation options

        Returns:
            TaskResult with output or error
        """
        pass

    async def run(
        self,
        action: str,
        params: Dict[str, Any],
        opts: Optional[TaskOptions] = None,
    ) -> TaskResult:
        """
        Run the handler with timing and error handling.

        This is the entry point used by the registry.
        """
        start = time.monotonic()
        try:
            logger.debug("Handler starting", action=action, task_type=self.task_type)
            result = await self.execute(action, params, opts or TaskOptions())
            result.duration_ms = (time.monotonic() - start) * 1000

            logger.debug(
                "Handler completed",
                action=action,
                status=result.status.value,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(
                "Handler failed",
                action=action,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return TaskResult(
                StepStatus.ERROR,
                error=str(e) or type(e).__name__,
                duration_ms=duration_ms,
            )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        """
        Return JSON schema for the handler's params.

        Override in subclasses to define expected params shape.
        """
        return {"type": "object", "properties": {}}
