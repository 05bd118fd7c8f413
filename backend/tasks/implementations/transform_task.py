"""Data transform handlers: ``json.*``, ``text.*`` and ``array.*``.

Inputs arrive already resolved by the engine, so ``input`` is usually a
``"{{ steps.x.output }}"`` reference. Per-item expressions for
``array.filter`` / ``array.map`` are plain expressions (no braces)
evaluated with ``item`` and ``index`` bound.
"""

import json
import re
from typing import Any, Dict

from core.exceptions import ExpressionError
from tasks.base_task import BaseTask, TaskOptions, TaskResult
from workflow.expressions import evaluate, resolve_path, stringify

_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


class JsonTask(BaseTask):
    """Parse, stringify and query JSON values.

    Actions:
        json.parse: input (string) -> value
        json.stringify: input, indent (default 2) -> string
        json.query: input, query (dotted path, e.g. ``data.items.0.name``)
    """

    task_type = "json"
    display_name = "JSON"
    description = "Parse, stringify and query JSON"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        operation = action.split(".", 1)[1] if "." in action else params.get("operation")
        value = params.get("input")

        if operation == "parse":
            if not isinstance(value, str):
                return TaskResult.ok(value)
            try:
                return TaskResult.ok(json.loads(value))
            except json.JSONDecodeError as e:
                return TaskResult.fail(f"Invalid JSON: {e}")
        if operation == "stringify":
            indent = params.get("indent", 2)
            return TaskResult.ok(json.dumps(value, indent=indent or None, default=str))
        if operation == "query":
            query = str(params.get("query") or "").lstrip("$").lstrip(".")
            if not query:
                return TaskResult.ok(value)
            return TaskResult.ok(resolve_path(f"$.{query}", {"$": value}))
        return TaskResult.fail(f"Unknown json action: {action}")


class TextTask(BaseTask):
    """String helpers.

    Actions:
        text.regex: input, pattern, flags (``g`` ``i`` ``m`` ``s``), replacement
        text.template: template (already interpolated by the engine)
        text.split: input, separator (default newline)
        text.join: input (list), separator (default newline)
    """

    task_type = "text"
    display_name = "Text"
    description = "Regex, split, join and template strings"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        operation = action.split(".", 1)[1] if "." in action else params.get("operation")

        if operation == "regex":
            text = stringify(params.get("input"))
            flags_param = str(params.get("flags", "g"))
            flags = 0
            for flag in flags_param:
                flags |= _REGEX_FLAGS.get(flag, 0)
            try:
                pattern = re.compile(str(params.get("pattern", "")), flags)
            except re.error as e:
                return TaskResult.fail(f"Invalid regex: {e}")
            if "replacement" in params:
                count = 0 if "g" in flags_param else 1
                return TaskResult.ok(pattern.sub(str(params["replacement"]), text, count=count))
            if "g" in flags_param:
                return TaskResult.ok([m.group(0) for m in pattern.finditer(text)])
            match = pattern.search(text)
            return TaskResult.ok(
                {"match": match.group(0), "groups": list(match.groups())} if match else None
            )
        if operation == "template":
            return TaskResult.ok(stringify(params.get("template")))
        if operation == "split":
            return TaskResult.ok(stringify(params.get("input")).split(str(params.get("separator", "\n"))))
        if operation == "join":
            items = params.get("input")
            if not isinstance(items, list):
                return TaskResult.fail("text.join input must be a list")
            return TaskResult.ok(str(params.get("separator", "\n")).join(stringify(i) for i in items))
        return TaskResult.fail(f"Unknown text action: {action}")


class ArrayTask(BaseTask):
    """List helpers.

    Actions:
        array.filter: input, expression (truthy keeps the item)
        array.map: input, expression
        array.sort: input, key (dotted path into items), order (asc|desc)
        array.flatten: input
        array.unique: input
    """

    task_type = "array"
    display_name = "Array"
    description = "Filter, map, sort and flatten lists"

    async def execute(self, action: str, params: Dict[str, Any], opts: TaskOptions) -> TaskResult:
        operation = action.split(".", 1)[1] if "." in action else params.get("operation")
        items = params.get("input")
        if not isinstance(items, list):
            return TaskResult.fail(f"{action} input must be a list")

        try:
            if operation == "filter":
                expression = str(params.get("expression", "item"))
                return TaskResult.ok([
                    item for index, item in enumerate(items)
                    if evaluate(expression, {"item": item, "index": index})
                ])
            if operation == "map":
                expression = str(params.get("expression", "item"))
                return TaskResult.ok([
                    evaluate(expression, {"item": item, "index": index})
                    for index, item in enumerate(items)
                ])
        except ExpressionError as e:
            return TaskResult.fail(e.message)

        if operation == "sort":
            path = f"$.{params['key']}" if params.get("key") else None
            reverse = params.get("order", "asc") == "desc"

            def sort_key(item):
                value = resolve_path(path, {"$": item}) if path else item
                # None sorts last regardless of type
                return (value is None, value if value is not None else 0)

            try:
                return TaskResult.ok(sorted(items, key=sort_key, reverse=reverse))
            except TypeError as e:
                return TaskResult.fail(f"Cannot sort mixed values: {e}")
        if operation == "flatten":
            return TaskResult.ok(_flatten(items))
        if operation == "unique":
            seen = []
            for item in items:
                if item not in seen:
                    seen.append(item)
            return TaskResult.ok(seen)
        return TaskResult.fail(f"Unknown array action: {action}")


def _flatten(items: list) -> list:
    result = []
    for item in items:
        if isinstance(item, list):
            result.extend(_flatten(item))
        else:
            result.append(item)
    return result


# Registry mapping
TRANSFORM_TASK_TYPES = {
    "json": JsonTask,
    "text": TextTask,
    "array": ArrayTask,
}
