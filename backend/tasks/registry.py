"""
Step Handler Registry: maps action names to handler implementations.

Lookup tries the exact action (``json.parse``) first, then its family
(``json``), so one handler can serve a whole family of actions.
New actions are added by registering a BaseTask subclass.
"""

from typing import Any, Dict, Optional, Type

from core.exceptions import HandlerError
from tasks.base_task import BaseTask, TaskOptions, TaskResult
from tasks.implementations.file_task import FILE_TASK_TYPES
from tasks.implementations.git_task import GIT_TASK_TYPES
from tasks.implementations.http_task import HTTP_TASK_TYPES
from tasks.implementations.notify_task import NOTIFY_TASK_TYPES
from tasks.implementations.transform_task import TRANSFORM_TASK_TYPES


class TaskRegistry:
    """Central registry for all step handler implementations."""

    def __init__(self, credentials: Any = None, http_transport: Any = None, builtins: bool = True):
        self._tasks: Dict[str, Type[BaseTask]] = {}
        self._credentials = credentials
        self._http_transport = http_transport
        if builtins:
            self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in handlers."""
        for registry in (
            HTTP_TASK_TYPES, NOTIFY_TASK_TYPES, TRANSFORM_TASK_TYPES, FILE_TASK_TYPES, GIT_TASK_TYPES,
        ):
            for action, task_class in registry.items():
                self.register(action, task_class)

    def register(self, action: str, task_class: Type[BaseTask]):
        """Register a handler for an action or action family."""
        self._tasks[action] = task_class

    def get(self, action: str) -> Optional[Type[BaseTask]]:
        """Get a handler class by exact action, falling back to its family."""
        task_class = self._tasks.get(action)
        if task_class is None and "." in action:
            task_class = self._tasks.get(action.split(".", 1)[0])
        return task_class

    def create_instance(self, action: str) -> Optional[BaseTask]:
        """Create a new handler instance for an action."""
        task_class = self.get(action)
        if task_class:
            return task_class()
        return None

    async def execute(self, action: str, params: Dict[str, Any], interactive: bool = False) -> TaskResult:
        """Run ``action`` through its handler.

        Raises:
            HandlerError: No handler is registered for the action
        """
        task = self.create_instance(action)
        if task is None:
            raise HandlerError(f"Unknown action: {action}")
        opts = TaskOptions(
            interactive=interactive,
            credentials=self._credentials,
            http_transport=self._http_transport,
        )
        return await task.run(action, params, opts)

    def list_all(self) -> list:
        """List all registered actions with metadata."""
        return [
            {
                "action": action,
                "display_name": cls.display_name,
                "description": cls.description,
                "config_schema": cls.get_config_schema(),
            }
            for action, cls in sorted(self._tasks.items())
        ]


# Singleton
_registry: Optional[TaskRegistry] = None


def get_task_registry() -> TaskRegistry:
    """Get or create the singleton task registry."""
    global _registry
    if _registry is None:
        from core.credentials import CredentialResolver

        _registry = TaskRegistry(credentials=CredentialResolver())
    return _registry
