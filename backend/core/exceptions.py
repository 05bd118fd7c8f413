"""Custom exceptions for the automation engine."""

from typing import Optional


class AutomateError(Exception):
    """Base exception for the automation engine."""

    def __init__(self, message: str):
        """Initialize exception with message.

        Args:
            message: Exception message
        """
        self.message = message
        super().__init__(self.message)


class ValidationError(AutomateError):
    """Malformed preset, variable override or interval.

    Raised before any step runs. ``problems`` carries every issue found.
    """

    def __init__(self, message: str = "Validation failed", problems: Optional[list[str]] = None):
        self.problems = problems or []
        if self.problems:
            message = message + ":\n" + "\n".join(f"  - {p}" for p in self.problems)
        super().__init__(message)


class IntervalError(ValidationError):
    """Interval specification does not match the grammar."""

    def __init__(self, spec: str, reason: str = ""):
        self.spec = spec
        detail = f" ({reason})" if reason else ""
        super().__init__(
            f"Invalid interval '{spec}'{detail}. Expected 'every N seconds|minutes|hours|days' "
            "or 'every day at HH:MM'"
        )


class ExpressionError(AutomateError):
    """A non-bare expression failed to evaluate."""

    def __init__(self, expression: str, reason: str):
        self.expression = expression
        super().__init__(f"Expression evaluation failed: {expression}: {reason}")


class HandlerError(AutomateError):
    """A step handler failed or no handler exists for an action."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        self.exit_code = exit_code
        super().__init__(message)


class NotFoundError(AutomateError):
    """Preset, task or run not found."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class ConflictError(AutomateError):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message)


class StoreError(AutomateError):
    """The run/task store could not complete an operation."""

    def __init__(self, message: str = "Store operation failed"):
        super().__init__(message)


class DaemonFatalError(AutomateError):
    """The daemon cannot continue (store unavailable, lock held)."""

    def __init__(self, message: str):
        super().__init__(message)
