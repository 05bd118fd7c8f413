"""Preset documents: schema, loading and discovery.

A preset is a JSON file::

    {
        "$schema": "automate/preset/v1",
        "name": "daily-report",
        "description": "Fetch stats and notify",
        "trigger": {"type": "schedule", "interval": "every day at 09:00"},
        "vars": {"url": {"type": "string", "default": "https://..."}},
        "steps": [
            {"id": "fetch", "action": "http.get", "params": {"url": "{{ vars.url }}"}},
            {"id": "check", "action": "if", "condition": "{{ steps.fetch.output.status == 200 }}",
             "then": "notify", "else": "fallback"},
            ...
        ]
    }
"""

import json
import logging
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.config import get_settings
from core.constants import PRESET_SCHEMA, STEP_ID_PATTERN, OnError, VarType
from core.exceptions import IntervalError, NotFoundError, ValidationError
from triggers.schedule import parse_interval

logger = logging.getLogger(__name__)


class VarDef(BaseModel):
    """Declared preset variable."""

    type: VarType = VarType.STRING
    description: str = ""
    default: Any = None
    required: Optional[bool] = None

    @property
    def is_required(self) -> bool:
        if self.required is not None:
            return self.required
        return self.default is None


class Trigger(BaseModel):
    type: Literal["manual", "schedule"] = "manual"
    interval: Optional[str] = None


class Step(BaseModel):
    """One node of the step graph."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(pattern=STEP_ID_PATTERN)
    name: Optional[str] = None
    action: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)
    on_error: OnError = Field(default=OnError.STOP, alias="onError")
    interactive: bool = False
    condition: Any = None
    then: Optional[str] = None
    else_: Optional[str] = Field(default=None, alias="else")

    @property
    def label(self) -> str:
        return self.name or self.id


class Preset(BaseModel):
    """A loaded preset. Treated as immutable once loaded."""

    model_config = ConfigDict(populate_by_name=True)

    schema_: str = Field(default=PRESET_SCHEMA, alias="$schema")
    name: str = Field(min_length=1)
    description: str = ""
    trigger: Trigger = Field(default_factory=Trigger)
    vars: dict[str, VarDef] = Field(default_factory=dict)
    steps: list[Step] = Field(min_length=1)

    _source: Optional[Path] = PrivateAttr(default=None)
    _graph: Any = PrivateAttr(default=None)

    @field_validator("schema_")
    @classmethod
    def _known_schema(cls, value: str) -> str:
        if value != PRESET_SCHEMA:
            raise ValueError(f"unsupported $schema '{value}' (expected '{PRESET_SCHEMA}')")
        return value

    @property
    def source(self) -> Optional[Path]:
        return self._source

    @property
    def graph(self):
        """Validated step graph, built on first access."""
        if self._graph is None:
            from workflow.graph import StepGraph

            self._graph = StepGraph.build(self)
        return self._graph


def _format_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "preset"
        problems.append(f"{location}: {error['msg']}")
    return problems


def parse_preset(data: Any, source: Optional[Path] = None) -> Preset:
    """Validate a preset document and its step graph.

    Raises:
        ValidationError: With every problem found
    """
    label = str(source) if source else "preset"
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid preset {label}", ["top level must be a JSON object"])
    try:
        preset = Preset.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid preset {label}", _format_pydantic_errors(e)) from e

    if preset.trigger.type == "schedule":
        try:
            parse_interval(preset.trigger.interval or "")
        except IntervalError as e:
            raise ValidationError(f"Invalid preset {label}", [f"trigger.interval: {e.message}"]) from e

    from workflow.graph import StepGraph

    preset._source = source
    preset._graph = StepGraph.build(preset)
    return preset


def preset_candidates(name_or_path: str, presets_dir: Optional[Path] = None) -> list[Path]:
    """Paths tried, in order, when resolving a preset reference."""
    presets_dir = presets_dir or get_settings().presets_path
    candidates = [Path(name_or_path).expanduser()]
    if not name_or_path.endswith(".json"):
        candidates.append(presets_dir / f"{name_or_path}.json")
    candidates.append(presets_dir / name_or_path)
    return candidates


def load_preset(name_or_path: Union[str, Path], presets_dir: Optional[Path] = None) -> Preset:
    """Load a preset from a file path or by name from the presets directory.

    Raises:
        NotFoundError: No matching file
        ValidationError: Invalid JSON or preset
    """
    candidates = preset_candidates(str(name_or_path), presets_dir)
    path = next((c for c in candidates if c.is_file()), None)
    if path is None:
        searched = ", ".join(str(c) for c in candidates)
        raise NotFoundError(f"Preset '{name_or_path}' not found (searched: {searched})")

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid preset {path}", [f"invalid JSON: {e}"]) from e
    return parse_preset(data, source=path)


def list_presets(presets_dir: Optional[Path] = None) -> list[dict]:
    """Summaries of every valid preset in the presets directory."""
    presets_dir = presets_dir or get_settings().presets_path
    if not presets_dir.is_dir():
        return []

    summaries = []
    for path in sorted(presets_dir.glob("*.json")):
        try:
            preset = load_preset(path)
        except ValidationError as e:
            logger.warning("Skipping invalid preset %s: %s", path.name, e.message)
            continue
        summaries.append({
            "file": path.name,
            "name": preset.name,
            "description": preset.description,
            "steps": len(preset.steps),
            "trigger": preset.trigger.interval if preset.trigger.type == "schedule" else "manual",
        })
    return summaries
