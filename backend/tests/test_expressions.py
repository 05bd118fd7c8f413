"""Tests for template expression resolution."""

import pytest

from core.constants import StepStatus
from core.exceptions import ExpressionError
from workflow.context import ExecutionContext, StepResult
from workflow.expressions import evaluate, evaluate_condition, resolve, resolve_params, stringify


def _ctx(**step_outputs) -> ExecutionContext:
    ctx = ExecutionContext(vars={"name": "Ada", "count": 3, "flags": [True, False]}, env={"HOME": "/home/ada"})
    for step_id, output in step_outputs.items():
        ctx.record(StepResult(step_id=step_id.replace("_", "-"), status=StepStatus.SUCCESS, output=output))
    return ctx


@pytest.mark.unit
class TestInterpolation:
    """Whole-placeholder vs mixed-template typing."""

    def test_full_placeholder_keeps_number(self):
        ctx = ExecutionContext()
        ctx.record(StepResult(step_id="a", status=StepStatus.SUCCESS, output=42))
        assert resolve("{{ steps.a.output }}", ctx) == 42

    def test_mixed_template_is_string(self):
        ctx = ExecutionContext()
        ctx.record(StepResult(step_id="a", status=StepStatus.SUCCESS, output=42))
        assert resolve("count={{ steps.a.output }}", ctx) == "count=42"

    def test_full_placeholder_keeps_dict(self):
        ctx = _ctx(fetch={"status": 200, "body": {"items": [1, 2]}})
        assert resolve("{{ steps.fetch.output.body }}", ctx) == {"items": [1, 2]}

    def test_no_placeholder_passthrough(self):
        assert resolve("plain text", ExecutionContext()) == "plain text"
        assert resolve(7, ExecutionContext()) == 7

    def test_missing_path_is_none_and_empty_in_text(self):
        ctx = _ctx()
        assert resolve("{{ vars.nope.deeper }}", ctx) is None
        assert resolve("[{{ vars.nope }}]", ctx) == "[]"

    def test_stringify_rules(self):
        assert stringify(True) == "true"
        assert stringify(None) == ""
        assert stringify(3.0) == "3"
        assert stringify({"a": [1, 2]}) == '{"a":[1,2]}'

    def test_list_index_segment(self):
        ctx = _ctx(fetch={"items": ["x", "y"]})
        assert resolve("{{ steps.fetch.output.items.1 }}", ctx) == "y"

    def test_env_and_vars(self):
        ctx = _ctx()
        assert resolve("{{ vars.name }} lives in {{ env.HOME }}", ctx) == "Ada lives in /home/ada"

    def test_resolve_params_recurses(self):
        ctx = _ctx()
        params = {"a": ["{{ vars.count }}", {"b": "hi {{ vars.name }}"}], "c": 1}
        assert resolve_params(params, ctx) == {"a": [3, {"b": "hi Ada"}], "c": 1}


@pytest.mark.unit
class TestHyphenatedStepIds:

    def test_dotted_and_subscript_forms_match(self):
        ctx = _ctx(my_step={"value": 5})
        dotted = resolve("{{ steps.my-step.output.value }}", ctx)
        subscript = resolve("{{ steps['my-step'].output.value }}", ctx)
        assert dotted == subscript == 5

    def test_hyphenated_id_inside_expression(self):
        ctx = _ctx(my_step={"value": 5})
        assert resolve("{{ steps.my-step.output.value + 1 }}", ctx) == 6

    def test_string_literals_are_not_rewritten(self):
        ctx = _ctx()
        assert evaluate("'steps.my-step' + '!'", ctx) == "steps.my-step!"


@pytest.mark.unit
class TestSandbox:

    def test_comparison(self):
        assert evaluate("vars.count > 2", _ctx()) is True

    def test_javascript_operators(self):
        ctx = _ctx()
        assert evaluate("vars.count === 3 && !false", ctx) is True
        assert evaluate("vars.name !== 'Ada' || vars.count == 3", ctx) is True

    def test_literal_aliases(self):
        assert evaluate("null", _ctx()) is None
        assert evaluate("true", _ctx()) is True

    def test_length_and_functions(self):
        ctx = _ctx(fetch={"items": [1, 2, 3]})
        assert evaluate("steps.fetch.output.items.length", ctx) == 3
        assert evaluate("len(steps.fetch.output.items) == max(1, 3)", ctx) is True

    def test_ternary(self):
        assert evaluate("'many' if vars.count > 1 else 'one'", _ctx()) == "many"

    def test_unknown_name_raises(self):
        with pytest.raises(ExpressionError, match="Expression evaluation failed"):
            evaluate("nope + 1", _ctx())

    def test_disallowed_call_raises(self):
        with pytest.raises(ExpressionError):
            evaluate("open('/etc/passwd')", _ctx())

    def test_huge_power_rejected(self):
        with pytest.raises(ExpressionError):
            evaluate("2 ** 100000", _ctx())

    def test_loop_locals_visible(self):
        ctx = _ctx().child({"item": {"id": 9}})
        assert resolve("{{ item.id }}", ctx) == 9


@pytest.mark.unit
class TestConditions:

    def test_template_condition(self):
        ctx = _ctx(fetch={"status": 200})
        assert evaluate_condition("{{ steps.fetch.output.status == 200 }}", ctx) is True

    def test_bare_expression_condition(self):
        assert evaluate_condition("vars.count < 3", _ctx()) is False

    def test_non_string_passthrough(self):
        assert evaluate_condition(0, _ctx()) is False
        assert evaluate_condition([1], _ctx()) is True
