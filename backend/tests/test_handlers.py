"""Tests for the built-in step handlers."""

import asyncio
import time

import pytest

from core.constants import ErrorKind, StepType
from core.exceptions import HandlerError
from workflow.conditions import ConditionEvaluator
from workflow.handlers import (
    ActionHandler,
    BranchOutcome,
    ConditionHandler,
    DelayHandler,
    ExecutionView,
    HandlerRegistry,
    LoopHandler,
    ParallelHandler,
    create_default_registry,
)
from workflow.models import WorkflowStep
from workflow.state import ExecutionState, StepResult


class FakeInvoker:
    def __init__(self, output=None, error=None):
        self.output = output
        self.error = error
        self.calls = []

    async def invoke(self, action_id, context):
        self.calls.append((action_id, context))
        if self.error:
            raise self.error
        return self.output


def make_view(variables=None, run_branch=None):
    state = ExecutionState.create(workflow_id="wf-1", variables=variables or {})
    return ExecutionView(state, asyncio.Event(), run_branch), state


def step(**data):
    data.setdefault("id", "s1")
    return WorkflowStep.model_validate(data)


@pytest.mark.unit
class TestActionHandler:

    async def test_invokes_with_interpolated_parameters(self):
        invoker = FakeInvoker(output={"rows": 3})
        view, state = make_view(variables={"topic": "llamas", "limit": 5})
        state.record_result(StepResult(step_id="prev", output={"ok": 1}))
        handler = ActionHandler(invoker)

        result = await handler.execute(step(
            name="Search",
            config={"actionId": "web-search", "parameters": {"q": "about ${topic}", "n": "${limit}"}},
        ), view)

        assert result.success
        assert result.output == {"rows": 3}
        action_id, context = invoker.calls[0]
        assert action_id == "web-search"
        assert context["parameters"] == {"q": "about llamas", "n": 5}
        assert context["workflow_id"] == "wf-1"
        assert context["step_id"] == "s1"
        assert context["results"]["prev"]["output"] == {"ok": 1}
        assert context["variables"] == {"topic": "llamas", "limit": 5}

    async def test_output_variable(self):
        view, state = make_view()
        await ActionHandler(FakeInvoker(output=[1, 2])).execute(
            step(config={"actionId": "x", "outputVariable": "found"}), view
        )
        assert state.variables["found"] == [1, 2]

    async def test_snake_case_action_id(self):
        invoker = FakeInvoker(output=1)
        view, _ = make_view()
        await ActionHandler(invoker).execute(step(config={"action_id": "legacy"}), view)
        assert invoker.calls[0][0] == "legacy"

    async def test_missing_action_id(self):
        view, _ = make_view()
        with pytest.raises(HandlerError, match="no actionId"):
            await ActionHandler(FakeInvoker()).execute(step(config={}), view)

    async def test_invoker_error_becomes_handler_error(self):
        view, _ = make_view()
        handler = ActionHandler(FakeInvoker(error=RuntimeError("503 upstream")))
        with pytest.raises(HandlerError, match="503 upstream") as exc_info:
            await handler.execute(step(config={"actionId": "x"}), view)
        assert exc_info.value.step_id == "s1"


@pytest.mark.unit
class TestDelayHandler:

    async def test_completes(self):
        view, _ = make_view()
        result = await DelayHandler().execute(step(type="delay", config={"durationMs": 5}), view)
        assert result.success and not result.cancelled
        assert result.output == {"durationMs": 5}

    async def test_legacy_duration_key(self):
        view, _ = make_view()
        result = await DelayHandler().execute(step(type="delay", config={"duration": 1}), view)
        assert result.output == {"durationMs": 1}

    async def test_default_duration(self):
        view, _ = make_view()
        result = await DelayHandler(default_duration_ms=2).execute(step(type="delay"), view)
        assert result.output == {"durationMs": 2}

    @pytest.mark.parametrize("bad", [-1, "100", True, None])
    async def test_invalid_duration(self, bad):
        view, _ = make_view()
        with pytest.raises(HandlerError, match="invalid durationMs"):
            await DelayHandler().execute(step(type="delay", config={"durationMs": bad}), view)

    async def test_cancel_unblocks_delay(self):
        state = ExecutionState.create(workflow_id="wf-1")
        cancel = asyncio.Event()
        view = ExecutionView(state, cancel)

        async def cancel_soon():
            await asyncio.sleep(0.05)
            cancel.set()

        started = time.monotonic()
        canceller = asyncio.create_task(cancel_soon())
        result = await DelayHandler().execute(step(type="delay", config={"durationMs": 60_000}), view)
        await canceller

        assert result.cancelled
        assert not result.success
        assert time.monotonic() - started < 5


@pytest.mark.unit
class TestConditionHandler:

    async def test_true_and_false(self):
        handler = ConditionHandler(ConditionEvaluator())
        view, _ = make_view(variables={"count": 5})
        yes = await handler.execute(step(type="condition", condition="${count} > 3"), view)
        no = await handler.execute(step(type="condition", condition="${count} > 30"), view)
        assert yes.output["result"] is True
        assert no.output["result"] is False

    async def test_config_expression(self):
        handler = ConditionHandler(ConditionEvaluator())
        view, _ = make_view(variables={"flag": True})
        result = await handler.execute(step(type="condition", config={"expression": "${flag}"}), view)
        assert result.output["result"] is True

    async def test_error_is_false_with_warning(self):
        handler = ConditionHandler(ConditionEvaluator())
        view, state = make_view()
        result = await handler.execute(step(type="condition", condition="${missing} > 1"), view)
        assert result.success
        assert result.output["result"] is False
        assert "Unknown binding" in result.output["error"]
        assert state.warnings[0]["step_id"] == "s1"
        assert state.warnings[0]["kind"] == ErrorKind.CONDITION.value

    async def test_non_string_expression_is_false_with_warning(self):
        handler = ConditionHandler(ConditionEvaluator())
        view, state = make_view(variables={"x": 5})
        result = await handler.execute(step(type="condition", config={"expression": ["${x} > 1"]}), view)
        assert result.success
        assert result.output["result"] is False
        assert state.warnings[0]["kind"] == ErrorKind.CONDITION.value


@pytest.mark.unit
class TestLoopHandler:

    async def test_count_loop(self):
        seen = []

        async def run_branch(start, stop_at):
            seen.append((start, set(stop_at), state.variables["loop_index"]))
            return BranchOutcome(start_step_id=start, last_step_id=start)

        view, state = make_view(run_branch=run_branch)
        loop = step(id="loop", type="loop", config={"count": 3}, nextSteps=["body", "after"])
        result = await LoopHandler(ConditionEvaluator()).execute(loop, view)

        assert result.output == {"iterations": 3}
        body_stop = {"loop", "after"}
        assert seen == [("body", body_stop, 0), ("body", body_stop, 1), ("body", body_stop, 2)]

    async def test_condition_loop(self):
        state_ref = {}

        async def run_branch(start, stop_at):
            state = state_ref["state"]
            state.set_variables({"n": state.variables["n"] + 1})
            return BranchOutcome(start_step_id=start)

        view, state = make_view(variables={"n": 0}, run_branch=run_branch)
        state_ref["state"] = state
        loop = step(id="loop", type="loop", condition="${n} < 4", nextSteps=["body"])
        result = await LoopHandler(ConditionEvaluator()).execute(loop, view)

        assert result.output == {"iterations": 4}
        assert state.variables["n"] == 4

    async def test_max_iterations(self):
        async def run_branch(start, stop_at):
            return BranchOutcome(start_step_id=start)

        view, _ = make_view(run_branch=run_branch)
        loop = step(id="loop", type="loop", condition="true", nextSteps=["body"])
        with pytest.raises(HandlerError, match="exceeded 5 iterations"):
            await LoopHandler(ConditionEvaluator(), max_iterations=5).execute(loop, view)

    async def test_condition_error_stops_loop(self):
        async def run_branch(start, stop_at):
            return BranchOutcome(start_step_id=start)

        view, state = make_view(run_branch=run_branch)
        loop = step(id="loop", type="loop", condition="${nope}", nextSteps=["body"])
        result = await LoopHandler(ConditionEvaluator()).execute(loop, view)
        assert result.output == {"iterations": 0}
        assert state.warnings[0]["kind"] == "condition"

    async def test_needs_condition_or_count(self):
        view, _ = make_view()
        with pytest.raises(HandlerError, match="condition or a count"):
            await LoopHandler(ConditionEvaluator()).execute(
                step(id="loop", type="loop", nextSteps=["body"]), view
            )

    async def test_cancelled_body(self):
        async def run_branch(start, stop_at):
            return BranchOutcome(start_step_id=start, cancelled=True)

        view, _ = make_view(run_branch=run_branch)
        loop = step(id="loop", type="loop", config={"count": 10}, nextSteps=["body"])
        result = await LoopHandler(ConditionEvaluator()).execute(loop, view)
        assert result.cancelled
        assert result.output == {"iterations": 1}

    async def test_body_also_stops_at_enclosing_stop_set(self):
        seen = []

        async def run_branch(start, stop_at):
            seen.append(set(stop_at))
            return BranchOutcome(start_step_id=start)

        state = ExecutionState.create(workflow_id="wf-1")
        view = ExecutionView(state, asyncio.Event(), run_branch, stop_at={"join"})
        loop = step(id="loop", type="loop", config={"count": 1, "exit": "done"}, nextSteps=["body"])
        await LoopHandler(ConditionEvaluator()).execute(loop, view)

        assert seen == [{"loop", "done", "join"}]


@pytest.mark.unit
class TestParallelHandler:

    async def test_runs_all_branches(self):
        started = []

        async def run_branch(start, stop_at):
            started.append((start, set(stop_at)))
            await asyncio.sleep(0.01)
            return BranchOutcome(start_step_id=start)

        view, _ = make_view(run_branch=run_branch)
        par = step(id="p", type="parallel", config={"join": "j"}, nextSteps=["a", "b", "c"])
        result = await ParallelHandler().execute(par, view)

        assert result.success
        assert sorted(started) == [("a", {"j"}), ("b", {"j"}), ("c", {"j"})]
        assert result.output == {"branches": ["a", "b", "c"], "join": "j"}

    async def test_fail_fast(self):
        finished = []

        async def run_branch(start, stop_at):
            if start == "bad":
                await asyncio.sleep(0.01)
                raise HandlerError("branch exploded", step_id="bad")
            await asyncio.sleep(10)
            finished.append(start)
            return BranchOutcome(start_step_id=start)

        view, _ = make_view(run_branch=run_branch)
        par = step(id="p", type="parallel", nextSteps=["slow", "bad"])
        started = time.monotonic()
        with pytest.raises(HandlerError, match="branch exploded"):
            await ParallelHandler().execute(par, view)
        assert finished == []
        assert time.monotonic() - started < 5


@pytest.mark.unit
class TestHandlerRegistry:

    def test_default_registry_types(self, settings):
        registry = create_default_registry(FakeInvoker(), settings=settings)
        assert sorted(registry.available_types) == sorted(t.value for t in StepType)

    async def test_unknown_type(self):
        registry = HandlerRegistry()
        view, _ = make_view()
        with pytest.raises(HandlerError, match="Unsupported step type"):
            await registry.dispatch(step(type="delay"), view)

    async def test_dispatch_times_step(self, settings):
        registry = create_default_registry(FakeInvoker(), settings=settings)
        view, _ = make_view()
        result = await registry.dispatch(step(type="delay", config={"durationMs": 20}), view)
        assert result.duration_ms >= 10
