"""Constants and enums for the automation engine."""

from enum import Enum

PRESET_SCHEMA = "automate/preset/v1"

# Actions the engine handles itself instead of dispatching to the registry
CONTROL_ACTIONS = frozenset({"if", "set", "log", "prompt", "shell", "forEach", "while", "parallel"})

# Control actions that steer the main flow and cannot live inside a loop body or parallel group
FLOW_ONLY_ACTIONS = frozenset({"if", "parallel"})

STEP_ID_PATTERN = r"^[A-Za-z0-9_-]+$"
TASK_NAME_PATTERN = r"^[A-Za-z0-9_-]+$"


class StepStatus(str, Enum):
    """Outcome of a single step."""

    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Overall status of a run."""

    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class OnError(str, Enum):
    """Per-step failure policy."""

    STOP = "stop"
    CONTINUE = "continue"
    SKIP = "skip"


class TriggerType(str, Enum):
    """What started a run."""

    MANUAL = "manual"
    SCHEDULE = "schedule"


class VarType(str, Enum):
    """Declared type of a preset variable."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class DaemonState(str, Enum):
    """Lifecycle of the scheduler daemon."""

    STOPPED = "stopped"
    RUNNING = "running"


class CredentialType(str, Enum):
    """Type of credential."""

    BEARER = "bearer"
    BASIC = "basic"
    API_KEY = "apikey"
    CUSTOM = "custom"
