"""Template expression evaluation for step parameters.

Resolves ``{{ ... }}`` placeholders against an execution context:

- ``"{{ steps.fetch.output }}"`` yields the typed value (number, bool, list, dict)
- ``"count={{ steps.fetch.output }}"`` always yields a string
- bare dotted paths (``vars.x``, ``steps.id.output.field``, ``env.HOME``,
  loop names such as ``item.name``) are resolved by plain traversal;
  a missing segment yields ``None``
- anything else (operators, comparisons, calls) runs in a simpleeval
  sandbox whose only names are ``vars``, ``steps``, ``env`` and the
  current loop bindings

Step ids that are not Python identifiers (``my-step``) are rewritten to
subscript form before sandbox evaluation so both forms resolve the same.

Everything here is value-in/value-out; nothing touches engine state.
"""

import ast
import json
import logging
import re
from typing import Any, Mapping, Union

from simpleeval import EvalWithCompoundTypes

from core.exceptions import ExpressionError

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*((?:(?!\}\}).)+?)\s*\}\}", re.DOTALL)
BARE_PATH = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_-]+)*$")
_STEP_REF = re.compile(r"(?<![\w.\]])steps\.([A-Za-z0-9_-]+)")
_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")

# JavaScript-style operators accepted in conditions
_OPERATOR_ALIASES = [
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
]

MAX_EXPRESSION_LENGTH = 2000
MAX_POWER_EXPONENT = 100

LITERAL_NAMES = {"true": True, "false": False, "null": None, "undefined": None}

SAFE_FUNCTIONS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "sorted": sorted,
    "any": any,
    "all": all,
}

ContextLike = Union[Mapping[str, Any], Any]


class _SandboxEvaluator(EvalWithCompoundTypes):
    """simpleeval with JSON-object semantics.

    Attribute access and subscripts on dicts read keys, and a missing
    key or list index yields ``None`` instead of raising.
    """

    def __init__(self, names: dict):
        super().__init__(functions=dict(SAFE_FUNCTIONS), names=names)
        original_pow = self.operators[ast.Pow]

        def safe_pow(left, right):
            if isinstance(right, (int, float)) and right > MAX_POWER_EXPONENT:
                raise ValueError(f"exponent too large (max {MAX_POWER_EXPONENT})")
            return original_pow(left, right)

        self.operators[ast.Pow] = safe_pow

    def _eval_attribute(self, node):
        value = self._eval(node.value)
        if isinstance(value, dict):
            return value.get(node.attr)
        if node.attr == "length" and isinstance(value, (list, str)):
            return len(value)
        return super()._eval_attribute(node)

    def _eval_subscript(self, node):
        container = self._eval(node.value)
        key = self._eval(node.slice)
        if isinstance(container, dict):
            return container.get(key)
        if isinstance(container, list) and isinstance(key, int) and not -len(container) <= key < len(container):
            return None
        return container[key]


def _namespace(ctx: ContextLike) -> Mapping[str, Any]:
    if isinstance(ctx, Mapping):
        return ctx
    return ctx.namespace()


def _outside_strings(expression: str, fn) -> str:
    """Apply ``fn`` to every part of ``expression`` that is not a quoted string."""
    parts = _STRING_LITERAL.split(expression)
    return "".join(part if i % 2 else fn(part) for i, part in enumerate(parts))


def rewrite_step_refs(expression: str) -> str:
    """Rewrite ``steps.my-id`` to ``steps['my-id']`` for ids that are not identifiers."""

    def _rewrite(code: str) -> str:
        def _sub(match):
            step_id = match.group(1)
            if step_id.isidentifier():
                return match.group(0)
            return f"steps['{step_id}']"

        return _STEP_REF.sub(_sub, code)

    return _outside_strings(expression, _rewrite)


def _translate_operators(expression: str) -> str:
    def _translate(code: str) -> str:
        for pattern, replacement in _OPERATOR_ALIASES:
            code = pattern.sub(replacement, code)
        return code

    return _outside_strings(expression, _translate)


def is_bare_path(expression: str, namespace: Mapping[str, Any]) -> bool:
    if not BARE_PATH.match(expression):
        return False
    return expression.split(".", 1)[0] in namespace


def resolve_path(expression: str, namespace: Mapping[str, Any]) -> Any:
    """Walk a dotted path; any missing segment yields ``None``."""
    current: Any = namespace
    for part in expression.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        elif part == "length" and isinstance(current, (list, str)):
            current = len(current)
        else:
            return None
    return current


def evaluate(expression: str, ctx: ContextLike) -> Any:
    """Evaluate the inside of one placeholder.

    Raises:
        ExpressionError: A non-bare expression failed
    """
    expression = expression.strip()
    namespace = _namespace(ctx)

    if is_bare_path(expression, namespace):
        return resolve_path(expression, namespace)

    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(expression[:80] + "...", f"longer than {MAX_EXPRESSION_LENGTH} characters")

    code = _translate_operators(rewrite_step_refs(expression))
    evaluator = _SandboxEvaluator(names={**LITERAL_NAMES, **namespace})
    try:
        return evaluator.eval(code.strip())
    except Exception as e:
        raise ExpressionError(expression, str(e) or type(e).__name__) from e


def stringify(value: Any) -> str:
    """Render a value for interpolation into surrounding text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def resolve(template: Any, ctx: ContextLike) -> Any:
    """Resolve all placeholders in ``template``.

    Non-string values are returned untouched.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    whole = PLACEHOLDER.fullmatch(template)
    if whole:
        return evaluate(whole.group(1), ctx)

    return PLACEHOLDER.sub(lambda m: stringify(evaluate(m.group(1), ctx)), template)


def resolve_params(params: Any, ctx: ContextLike) -> Any:
    """Recursively resolve every string inside dicts and lists."""
    if isinstance(params, dict):
        return {key: resolve_params(value, ctx) for key, value in params.items()}
    if isinstance(params, list):
        return [resolve_params(value, ctx) for value in params]
    return resolve(params, ctx)


def evaluate_condition(condition: Any, ctx: ContextLike) -> bool:
    """Truthiness of a condition.

    ``"{{ ... }}"`` templates are resolved; plain strings are treated as
    an expression (``"vars.count < 3"``); other values pass through.
    """
    if isinstance(condition, str):
        if "{{" in condition:
            value = resolve(condition, ctx)
        else:
            value = evaluate(condition, ctx)
    else:
        value = condition
    logger.debug("Condition %r evaluated to %r", condition, value)
    return bool(value)
