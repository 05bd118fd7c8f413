"""Tests for the preset execution engine."""

import asyncio

import pytest

from core.constants import RunStatus, StepStatus, VarType
from core.exceptions import ValidationError
from tasks.base_task import TaskResult
from tasks.registry import TaskRegistry
from workflow.engine import PresetEngine, build_context, coerce_var


def _engine(registry, settings, **kwargs) -> PresetEngine:
    return PresetEngine(task_registry=registry, settings=settings, env={"HOME": "/tmp"}, **kwargs)


@pytest.mark.unit
class TestOnErrorPolicies:

    async def test_skip_records_skipped_and_continues(self, fake_registry, settings, make_preset):
        fake_registry.responses["work.fail"] = TaskResult.fail("boom")
        preset = make_preset(
            {"id": "a", "action": "work.fail", "onError": "skip"},
            {"id": "b", "action": "work.ok"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.SUCCESS
        assert run.step("a").status == StepStatus.SKIPPED
        assert run.step("a").error is None
        assert run.step("b").status == StepStatus.SUCCESS

    async def test_stop_halts_the_run(self, fake_registry, settings, make_preset):
        fake_registry.responses["work.fail"] = TaskResult.fail("boom")
        preset = make_preset(
            {"id": "a", "action": "work.fail"},
            {"id": "b", "action": "work.ok"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.ERROR
        assert "Step 'a' failed: boom" in run.error
        assert fake_registry.actions() == ["work.fail"]
        assert run.step("b") is None

    async def test_continue_records_error_and_moves_on(self, fake_registry, settings, make_preset):
        fake_registry.responses["work.fail"] = TaskResult.fail("boom", exit_code=3)
        preset = make_preset(
            {"id": "a", "action": "work.fail", "onError": "continue"},
            {"id": "b", "action": "work.ok"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.SUCCESS
        assert run.step("a").status == StepStatus.ERROR
        assert run.step("a").exit_code == 3
        assert run.step("b") is not None

    async def test_handler_exception_becomes_step_error(self, fake_registry, settings, make_preset):
        fake_registry.responses["work.crash"] = RuntimeError("kaput")
        preset = make_preset({"id": "a", "action": "work.crash", "onError": "continue"})
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("a").status == StepStatus.ERROR
        assert "kaput" in run.step("a").error

    async def test_expression_error_is_a_step_error(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "a", "action": "work", "params": {"x": "{{ undefined_name + 1 }}"}})
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.ERROR
        assert "Expression evaluation failed" in run.step("a").error
        assert fake_registry.calls == []

    async def test_unknown_action_fails_the_step(self, settings, make_preset):
        preset = make_preset({"id": "a", "action": "teleport"})
        run = await _engine(TaskRegistry(), settings).run(preset)

        assert run.status == RunStatus.ERROR
        assert "Unknown action: teleport" in run.step("a").error


@pytest.mark.unit
class TestBranching:

    def _preset(self, make_preset, condition):
        return make_preset(
            {"id": "check", "action": "if", "condition": condition, "then": "yes", "else": "no"},
            {"id": "no", "action": "say.no"},
            {"id": "yes", "action": "say.yes"},
        )

    async def test_true_jumps_to_then(self, fake_registry, settings, make_preset):
        run = await _engine(fake_registry, settings).run(self._preset(make_preset, "{{ 1 < 2 }}"))

        assert [r.step_id for r in run.steps] == ["check", "yes"]
        assert run.step("check").output is True
        assert run.step("no") is None

    async def test_false_jumps_to_else(self, fake_registry, settings, make_preset):
        run = await _engine(fake_registry, settings).run(self._preset(make_preset, "vars.missing"))

        assert [r.step_id for r in run.steps] == ["check", "no"]
        assert run.step("check").output is False
        assert run.step("yes") is None

    async def test_else_declared_after_then_is_not_visited(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "check", "action": "if", "condition": "true", "then": "yes", "else": "no"},
            {"id": "yes", "action": "say.yes"},
            {"id": "no", "action": "say.no"},
            {"id": "after", "action": "say.after"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert [r.step_id for r in run.steps] == ["check", "yes", "after"]
        assert fake_registry.actions() == ["say.yes", "say.after"]

    async def test_then_only_is_passed_over_when_false(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "check", "action": "if", "condition": "false", "then": "yes"},
            {"id": "yes", "action": "say.yes"},
            {"id": "after", "action": "say.after"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert [r.step_id for r in run.steps] == ["check", "after"]

    async def test_visited_sequence_is_deterministic(self, fake_registry, settings, make_preset):
        preset = self._preset(make_preset, "{{ 1 < 2 }}")
        first = await _engine(fake_registry, settings).run(preset)
        second = await _engine(fake_registry, settings).run(preset)

        assert [(r.step_id, r.status, r.output) for r in first.steps] == \
               [(r.step_id, r.status, r.output) for r in second.steps]


@pytest.mark.unit
class TestLoops:

    async def test_foreach_concurrency_bound(self, fake_registry, settings, make_preset):
        fake_registry.delay = 0.05
        preset = make_preset({
            "id": "each",
            "action": "forEach",
            "params": {
                "items": [1, 2, 3, 4, 5],
                "concurrency": 2,
                "step": {"action": "work", "params": {"n": "{{ item }}", "i": "{{ index }}"}},
            },
        })
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.SUCCESS
        assert fake_registry.max_in_flight == 2
        assert run.step("each").output["count"] == 5
        assert sorted(params["n"] for _, params in fake_registry.calls) == [1, 2, 3, 4, 5]

    async def test_foreach_results_in_item_order(self, fake_registry, settings, make_preset):
        preset = make_preset({
            "id": "each",
            "action": "forEach",
            "params": {"items": "{{ vars.names }}", "as": "who", "concurrency": 3, "step": {"action": "set", "params": {"greeting": "hi {{ who }}"}}},
        }, vars={"names": {"type": "string", "default": ["a", "b", "c"]}})
        run = await _engine(fake_registry, settings).run(preset)

        outputs = run.step("each").output["results"]
        assert outputs == [{"greeting": "hi a"}, {"greeting": "hi b"}, {"greeting": "hi c"}]
        # Iteration writes stay inside the iteration
        assert "greeting" not in run.vars

    async def test_foreach_items_as_bare_path(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "s", "action": "set", "params": {"list": [1, 2, 3]}},
            {"id": "each", "action": "forEach", "params": {
                "items": "vars.list",
                "step": {"action": "work", "params": {"n": "{{ item }}"}},
            }},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.SUCCESS
        assert run.step("each").output["count"] == 3
        assert [params["n"] for _, params in fake_registry.calls] == [1, 2, 3]

    async def test_foreach_failures_aggregate(self, fake_registry, settings, make_preset):
        fake_registry.responses["work"] = lambda params: (
            TaskResult.fail("odd") if params["n"] % 2 else TaskResult.ok(params["n"])
        )
        preset = make_preset({
            "id": "each",
            "action": "forEach",
            "onError": "continue",
            "params": {"items": [1, 2, 3], "step": {"action": "work", "params": {"n": "{{ item }}"}}},
        })
        run = await _engine(fake_registry, settings).run(preset)

        result = run.step("each")
        assert result.status == StepStatus.ERROR
        assert result.error == "2/3 iterations failed"
        assert result.output["failures"] == 2

    async def test_foreach_items_must_be_a_list(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "each", "action": "forEach", "params": {"items": "{{ vars.x }}", "step": {"action": "work"}}},
                             vars={"x": {"type": "number", "default": 4}})
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.ERROR
        assert "did not resolve to a list" in run.step("each").error

    async def test_while_stops_at_max_iterations(self, fake_registry, settings, make_preset):
        preset = make_preset({
            "id": "forever",
            "action": "while",
            "params": {"condition": "true", "maxIterations": 4, "step": {"action": "work"}},
        })
        run = await asyncio.wait_for(_engine(fake_registry, settings).run(preset), timeout=5)

        result = run.step("forever")
        assert result.status == StepStatus.SUCCESS
        assert result.output["iterations"] == 4
        assert result.output["stopReason"] == "maxIterations"

    async def test_while_default_cap_from_settings(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "forever", "action": "while", "params": {"condition": "true", "step": {"action": "work"}}})
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("forever").output["iterations"] == settings.WHILE_MAX_ITERATIONS

    async def test_while_counter_in_loop_scope(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {
                "id": "count",
                "action": "while",
                "params": {"condition": "vars.n < 3", "step": {"action": "set", "params": {"n": "{{ vars.n + 1 }}"}}},
            },
            vars={"n": {"type": "number", "default": 0}},
        )
        run = await _engine(fake_registry, settings).run(preset)

        output = run.step("count").output
        assert output["iterations"] == 3
        assert output["stopReason"] == "condition"
        assert output["results"][-1] == {"n": 3}
        assert run.vars["n"] == 0

    async def test_while_body_failure_stops_loop(self, fake_registry, settings, make_preset):
        fake_registry.responses["work"] = TaskResult.fail("nope")
        preset = make_preset({
            "id": "loop",
            "action": "while",
            "onError": "continue",
            "params": {"condition": "index < 2", "step": {"action": "work"}},
        })
        run = await _engine(fake_registry, settings).run(preset)

        output = run.step("loop").output
        # onError continue on the while step keeps iterating through failures
        assert output["iterations"] == 2
        assert output["failures"] == 2


@pytest.mark.unit
class TestParallel:

    async def test_results_in_declared_order_then_aggregate(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "group", "action": "parallel", "params": {"steps": ["x", "y"], "onError": "continue"}},
            {"id": "x", "action": "work.x"},
            {"id": "y", "action": "work.y"},
            {"id": "after", "action": "work.after", "params": {"seen": "{{ steps.x.status }}"}},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert [r.step_id for r in run.steps] == ["x", "y", "group", "after"]
        assert run.step("group").output == {"completed": ["x", "y"], "failures": 0, "cancelled": []}
        assert run.step("after").output == {"seen": "success"}

    async def test_continue_waits_for_all_members(self, fake_registry, settings, make_preset):
        fake_registry.responses["work.x"] = TaskResult.fail("x broke")
        preset = make_preset(
            {"id": "group", "action": "parallel", "onError": "continue", "params": {"steps": ["x", "y"], "onError": "continue"}},
            {"id": "x", "action": "work.x"},
            {"id": "y", "action": "work.y"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("y").status == StepStatus.SUCCESS
        assert run.step("group").status == StepStatus.ERROR
        assert run.step("group").output["failures"] == 1

    async def test_stop_cancels_pending_members(self, fake_registry, settings, make_preset):
        fake_registry.responses["work.x"] = TaskResult.fail("x broke")
        preset = make_preset(
            {"id": "group", "action": "parallel", "params": {"steps": ["x", "slow"]}},
            {"id": "x", "action": "work.x"},
            {"id": "slow", "action": "shell", "params": {"command": "sleep 5"}},
        )
        run = await asyncio.wait_for(_engine(fake_registry, settings).run(preset), timeout=4)

        assert run.status == RunStatus.ERROR
        assert run.step("slow") is None
        assert run.step("group").output["cancelled"] == ["slow"]


@pytest.mark.unit
class TestBuiltins:

    async def test_set_merges_vars(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "s", "action": "set", "params": {"greeting": "hello {{ vars.who }}"}},
            {"id": "use", "action": "work", "params": {"text": "{{ vars.greeting }}"}},
            vars={"who": {"type": "string", "default": "world"}},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("s").output == {"greeting": "hello world"}
        assert run.vars["greeting"] == "hello world"
        assert fake_registry.calls[0] == ("work", {"text": "hello world"})

    async def test_log_outputs_message(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "l", "action": "log", "params": {"message": "n={{ 2 * 3 }}"}})
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("l").output == "n=6"

    async def test_prompt_uses_default_without_terminal(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "ask", "action": "prompt", "params": {"message": "Name?", "default": "anon"}},
            {"id": "ask2", "action": "prompt", "params": {"message": "Age?"}, "onError": "continue"},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("ask").output == "anon"
        assert run.step("ask2").status == StepStatus.ERROR

    async def test_prompt_uses_prompter(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "ask", "action": "prompt", "params": {"message": "Name?"}})
        engine = _engine(fake_registry, settings, interactive=True, prompter=lambda message, default: f"answer to {message}")
        run = await engine.run(preset)

        assert run.step("ask").output == "answer to Name?"

    async def test_shell_parses_json_stdout(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "sh", "action": "shell", "params": {"command": "echo '{\"a\": 1}'"}})
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("sh").output == {"a": 1}
        assert run.step("sh").exit_code == 0

    async def test_shell_nonzero_exit(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "sh", "action": "shell", "params": {"command": "echo oops >&2; exit 4"}})
        run = await _engine(fake_registry, settings).run(preset)

        result = run.step("sh")
        assert result.status == StepStatus.ERROR
        assert result.exit_code == 4
        assert result.error == "oops"

    async def test_shell_env_and_cwd(self, fake_registry, settings, make_preset, tmp_path):
        preset = make_preset({
            "id": "sh",
            "action": "shell",
            "params": {"command": "echo \"$GREETING $(pwd)\"", "env": {"GREETING": "hey"}, "cwd": str(tmp_path)},
        })
        run = await _engine(fake_registry, settings).run(preset)

        assert run.step("sh").output == f"hey {tmp_path}"

    async def test_shell_timeout(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "sh", "action": "shell", "params": {"command": "sleep 5", "timeout": 0.2}})
        run = await asyncio.wait_for(_engine(fake_registry, settings).run(preset), timeout=4)

        assert run.status == RunStatus.ERROR
        assert "timed out" in run.step("sh").error


@pytest.mark.unit
class TestVariables:

    def test_coercion(self):
        assert coerce_var("5", VarType.NUMBER) == 5
        assert coerce_var("2.5", VarType.NUMBER) == 2.5
        assert coerce_var("Yes", VarType.BOOLEAN) is True
        assert coerce_var(7, VarType.STRING) == "7"
        with pytest.raises(ValueError):
            coerce_var("many", VarType.NUMBER)

    def test_context_layers(self, make_preset):
        preset = make_preset(
            {"id": "a", "action": "log"},
            vars={"n": {"type": "number", "default": 1}, "flag": {"type": "boolean", "default": False}},
        )
        ctx = build_context(preset, {"n": "9", "extra": "raw"}, env={"K": "v"})

        assert ctx.vars == {"n": 9, "flag": False, "extra": "raw"}
        assert ctx.env == {"K": "v"}

    async def test_missing_required_var_fails_before_any_step(self, fake_registry, settings, make_preset):
        started = []

        async def on_run_start(run):
            started.append(run)

        preset = make_preset({"id": "a", "action": "work"}, vars={"city": {"type": "string"}})
        with pytest.raises(ValidationError, match="city"):
            await _engine(fake_registry, settings, on_run_start=on_run_start).run(preset)
        assert started == []
        assert fake_registry.calls == []

    async def test_bad_override_type(self, fake_registry, settings, make_preset):
        preset = make_preset({"id": "a", "action": "work"}, vars={"n": {"type": "number", "default": 1}})
        with pytest.raises(ValidationError, match="var 'n'"):
            await _engine(fake_registry, settings).run(preset, {"n": "lots"})


@pytest.mark.unit
class TestRunLifecycle:

    async def test_hooks_see_every_result(self, fake_registry, settings, make_preset):
        events = []

        async def on_run_start(run):
            events.append(("start", run.status))

        async def on_step_complete(run, result):
            events.append(("step", result.step_id))

        async def on_run_complete(run):
            events.append(("done", run.status))

        preset = make_preset({"id": "a", "action": "work"}, {"id": "b", "action": "work"})
        await _engine(
            fake_registry, settings,
            on_run_start=on_run_start, on_step_complete=on_step_complete, on_run_complete=on_run_complete,
        ).run(preset)

        assert events == [
            ("start", RunStatus.RUNNING),
            ("step", "a"),
            ("step", "b"),
            ("done", RunStatus.SUCCESS),
        ]

    async def test_dry_run_executes_nothing(self, fake_registry, settings, make_preset):
        preset = make_preset(
            {"id": "check", "action": "if", "condition": "true", "then": "b"},
            {"id": "a", "action": "shell", "params": {"command": "exit 1"}},
            {"id": "b", "action": "work"},
        )
        run = await _engine(fake_registry, settings).run(preset, dry_run=True)

        assert run.status == RunStatus.SUCCESS
        assert [r.step_id for r in run.steps] == ["check", "a", "b"]
        assert all(r.status == StepStatus.SKIPPED for r in run.steps)
        assert run.step("a").output.startswith("[dry-run] shell")
        assert fake_registry.calls == []

    async def test_cancellation_finalizes_run(self, fake_registry, settings, make_preset):
        finished = []

        async def on_run_complete(run):
            finished.append(run)

        preset = make_preset({"id": "sh", "action": "shell", "params": {"command": "sleep 5"}})
        task = asyncio.ensure_future(_engine(fake_registry, settings, on_run_complete=on_run_complete).run(preset))
        await asyncio.sleep(0.3)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert finished[0].status == RunStatus.CANCELLED
        assert finished[0].finished_at is not None


@pytest.mark.integration
class TestEndToEnd:

    async def test_fetch_branch_notify(self, fake_registry, settings, make_preset):
        fake_registry.responses["http.get"] = TaskResult.ok({"status": 200})
        preset = make_preset(
            {"id": "fetch", "action": "http.get", "params": {"url": "https://example.test/health"}},
            {"id": "check", "action": "if", "condition": "{{ steps.fetch.output.status == 200 }}", "then": "notify", "else": "alert"},
            {"id": "alert", "action": "notify", "params": {"message": "down"}},
            {"id": "notify", "action": "notify", "params": {"message": "up: {{ steps.fetch.output.status }}"}},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert run.status == RunStatus.SUCCESS
        after_fetch = [r.step_id for r in run.steps[1:]]
        assert after_fetch == ["check", "notify"]
        assert run.step("alert") is None
        assert fake_registry.calls[-1] == ("notify", {"message": "up: 200"})

    async def test_branch_target_declared_first(self, fake_registry, settings, make_preset):
        fake_registry.responses["http.get"] = TaskResult.ok({"status": 200})
        preset = make_preset(
            {"id": "fetch", "action": "http.get", "params": {"url": "https://example.test/health"}},
            {"id": "check", "action": "if", "condition": "{{ steps.fetch.output.status == 200 }}", "then": "notify", "else": "alert"},
            {"id": "notify", "action": "notify", "params": {"message": "up"}},
            {"id": "alert", "action": "notify", "params": {"message": "down"}},
        )
        run = await _engine(fake_registry, settings).run(preset)

        assert [r.step_id for r in run.steps] == ["fetch", "check", "notify"]
        assert run.step("alert") is None
