"""Step Handler Registry & built-in step handlers.

Every step type maps to a handler implementing
``execute(step, view) -> StepResult``. Handlers never pick the next step;
they only report an outcome. Branch selection, loop exits and parallel
joins are resolved by the executor from the step definition.

Loop semantics (while-loop):
    Before each iteration the step's condition is evaluated; while it holds,
    the body sub-graph starting at ``next_steps[0]`` runs until it comes back
    to the loop step or reaches the loop exit or a terminal step. Inside a
    parallel branch the body also stops at the join. Without a condition,
    ``config.count`` iterations run. ``config.maxIterations`` is a safety
    valve. Execution continues at ``config.exit`` or ``next_steps[1]``.

Parallel semantics (fan-out / fail-fast join):
    Every id in ``next_steps`` is a branch head. Branches run concurrently
    until they reach a terminal step or ``config.join``. The join waits for
    all of them; the first failing branch cancels the rest and fails the
    step. Execution continues at ``config.join``.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import MappingProxyType
from typing import AbstractSet, Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Set

import structlog

from app.config import Settings, get_settings
from core.constants import ErrorKind, StepType
from core.exceptions import ConditionError, HandlerError
from workflow.conditions import ConditionEvaluator, interpolate
from workflow.models import WorkflowStep
from workflow.state import ExecutionState, StepResult

logger = structlog.get_logger(__name__)


class ActionInvoker(Protocol):
    """External action-invocation collaborator."""

    async def invoke(self, action_id: str, context: Dict[str, Any]) -> Any:
        ...


@dataclass
class BranchOutcome:
    """How a sub-traversal (loop body or parallel branch) ended."""

    start_step_id: str
    last_step_id: Optional[str] = None
    cancelled: bool = False


BranchRunner = Callable[[str, Set[str]], Awaitable[BranchOutcome]]


class ExecutionView:
    """What a handler may see and touch of a running execution."""

    def __init__(
        self,
        state: ExecutionState,
        cancel_event: asyncio.Event,
        run_branch: Optional[BranchRunner] = None,
        stop_at: AbstractSet[str] = frozenset(),
    ):
        self._state = state
        self._cancel_event = cancel_event
        self._run_branch = run_branch
        self._stop_at = frozenset(stop_at)

    @property
    def execution_id(self) -> str:
        return self._state.id

    @property
    def workflow_id(self) -> str:
        return self._state.workflow_id

    @property
    def trigger_data(self) -> Optional[Dict[str, Any]]:
        return self._state.trigger_data

    @property
    def variables(self) -> Mapping[str, Any]:
        return MappingProxyType(self._state.variables)

    @property
    def results(self) -> Mapping[str, Any]:
        return MappingProxyType(self._state.results)

    def bindings(self) -> Dict[str, Any]:
        return self._state.bindings()

    def set_variables(self, values: Dict[str, Any]) -> None:
        self._state.set_variables(values)

    def add_warning(self, step_id: str, kind: ErrorKind, message: str) -> None:
        self._state.add_warning(step_id, kind, message)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def wait_for_cancel(self, timeout: float) -> bool:
        """Suspend up to ``timeout`` seconds. True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_branch(self, start_step_id: str, stop_at: AbstractSet[str]) -> BranchOutcome:
        """Run a sub-graph. It also stops wherever the enclosing traversal would stop."""
        if self._run_branch is None:
            raise HandlerError("Sub-graph execution is not available in this context")
        return await self._run_branch(start_step_id, set(stop_at) | self._stop_at)


def loop_exit_step_id(step: WorkflowStep) -> Optional[str]:
    """Where execution continues after a loop: ``config.exit``, else ``next_steps[1]``."""
    exit_id = step.config.get("exit")
    if exit_id:
        return exit_id
    return step.next_steps[1] if len(step.next_steps) > 1 else None


def _cancelled_result(step: WorkflowStep, message: str, output: Any = None) -> StepResult:
    return StepResult(step_id=step.id, success=False, cancelled=True, message=message, output=output)


class StepHandler(ABC):
    """Base class for step handlers."""

    step_type: StepType

    @abstractmethod
    async def execute(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        """Run the step. Raise HandlerError (or any exception) to fail it."""


class ActionHandler(StepHandler):
    """Delegates to the action invoker named by ``config.actionId``.

    No retries: a failed invocation fails the step.
    """

    step_type = StepType.ACTION

    def __init__(self, invoker: ActionInvoker):
        self._invoker = invoker

    async def execute(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        action_id = step.config.get("actionId") or step.config.get("action_id")
        if not action_id:
            raise HandlerError(f"Action step '{step.id}' has no actionId", step_id=step.id)

        bindings = view.bindings()
        context = {
            "execution_id": view.execution_id,
            "workflow_id": view.workflow_id,
            "step_id": step.id,
            "step_name": step.display_name,
            "parameters": interpolate(step.config.get("parameters", {}), bindings),
            "variables": dict(view.variables),
            "results": {sid: value for sid, value in bindings.items() if sid in view.results},
            "trigger_data": view.trigger_data,
        }

        try:
            output = await self._invoker.invoke(action_id, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise HandlerError(
                f'Action "{step.display_name}" ({action_id}) failed: {e}', step_id=step.id
            ) from e

        output_variable = step.config.get("outputVariable")
        if output_variable:
            view.set_variables({output_variable: output})

        return StepResult(
            step_id=step.id,
            success=True,
            message=f'Action "{step.display_name}" completed successfully',
            output=output,
        )


class DelayHandler(StepHandler):
    """Suspends the execution for ``config.durationMs``; cancellable."""

    step_type = StepType.DELAY

    def __init__(self, default_duration_ms: int = 1000):
        self._default_duration_ms = default_duration_ms

    async def execute(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        raw = step.config.get("durationMs", step.config.get("duration", self._default_duration_ms))
        if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw < 0:
            raise HandlerError(f"Delay step '{step.id}' has invalid durationMs: {raw!r}", step_id=step.id)

        if await view.wait_for_cancel(raw / 1000):
            return _cancelled_result(step, f"Delay of {raw}ms cancelled", {"durationMs": raw})

        return StepResult(
            step_id=step.id,
            success=True,
            message=f"Delay of {raw}ms completed",
            output={"durationMs": raw},
        )


class ConditionHandler(StepHandler):
    """Evaluates the step condition; a ConditionError counts as false and is recorded as a warning."""

    step_type = StepType.CONDITION

    def __init__(self, evaluator: ConditionEvaluator):
        self._evaluator = evaluator

    async def execute(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        expression = step.condition or step.config.get("expression", "")
        try:
            outcome = self._evaluator.evaluate(expression, view.bindings())
        except ConditionError as e:
            logger.warning("Condition evaluation failed, treating as false",
                           execution_id=view.execution_id, step_id=step.id, error=str(e))
            view.add_warning(step.id, ErrorKind.CONDITION, str(e))
            return StepResult(
                step_id=step.id,
                success=True,
                message=f'Condition "{step.display_name}" could not be evaluated; treated as false',
                output={"result": False, "expression": expression, "error": str(e)},
            )

        return StepResult(
            step_id=step.id,
            success=True,
            message=f'Condition "{step.display_name}" evaluated to {str(outcome).lower()}',
            output={"result": outcome, "expression": expression},
        )


class LoopHandler(StepHandler):
    """Repeats the body sub-graph while the condition holds (or ``count`` times)."""

    step_type = StepType.LOOP

    def __init__(self, evaluator: ConditionEvaluator, max_iterations: int = 100):
        self._evaluator = evaluator
        self._max_iterations = max_iterations

    async def execute(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        if not step.next_steps:
            raise HandlerError(f"Loop step '{step.id}' has no body", step_id=step.id)
        body = step.next_steps[0]
        expression = step.condition or step.config.get("expression")
        count = step.config.get("count")
        if not expression and count is None:
            raise HandlerError(f"Loop step '{step.id}' needs a condition or a count", step_id=step.id)

        max_iterations = int(step.config.get("maxIterations", self._max_iterations))
        index_variable = step.config.get("indexVariable", "loop_index")
        exit_id = loop_exit_step_id(step)
        body_stop_at = {step.id, exit_id} if exit_id else {step.id}
        iterations = 0

        while True:
            if view.cancelled:
                return _cancelled_result(step, "Loop cancelled", {"iterations": iterations})

            if expression:
                try:
                    if not self._evaluator.evaluate(expression, view.bindings()):
                        break
                except ConditionError as e:
                    view.add_warning(step.id, ErrorKind.CONDITION, str(e))
                    break
            elif iterations >= int(count):
                break

            if iterations >= max_iterations:
                raise HandlerError(
                    f"Loop step '{step.id}' exceeded {max_iterations} iterations", step_id=step.id
                )

            view.set_variables({index_variable: iterations})
            outcome = await view.run_branch(body, body_stop_at)
            iterations += 1
            if outcome.cancelled:
                return _cancelled_result(step, "Loop cancelled", {"iterations": iterations})

        return StepResult(
            step_id=step.id,
            success=True,
            message=f'Loop "{step.display_name}" finished after {iterations} iteration(s)',
            output={"iterations": iterations},
        )


class ParallelHandler(StepHandler):
    """Fans out to every ``next_steps`` branch and joins on all of them (fail-fast)."""

    step_type = StepType.PARALLEL

    async def execute(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        if not step.next_steps:
            raise HandlerError(f"Parallel step '{step.id}' has no branches", step_id=step.id)
        join = step.config.get("join")
        stop_at = {join} if join else set()

        tasks = [
            asyncio.create_task(view.run_branch(branch, stop_at), name=f"{step.id}:{branch}")
            for branch in step.next_steps
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            await _cancel_all(tasks)
            raise

        failed = [t for t in done if not t.cancelled() and t.exception() is not None]
        if failed:
            await _cancel_all(pending)
            raise failed[0].exception()

        outcomes = [t.result() for t in tasks]
        output = {"branches": list(step.next_steps), "join": join}
        if any(o.cancelled for o in outcomes):
            return _cancelled_result(step, "Parallel branches cancelled", output)

        return StepResult(
            step_id=step.id,
            success=True,
            message=f'Parallel "{step.display_name}" joined {len(tasks)} branch(es)',
            output=output,
        )


async def _cancel_all(tasks) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class HandlerRegistry:
    """Maps step types to handlers."""

    def __init__(self):
        self._handlers: Dict[StepType, StepHandler] = {}

    def register(self, step_type: StepType, handler: StepHandler) -> None:
        self._handlers[StepType(step_type)] = handler

    def get(self, step_type: StepType) -> Optional[StepHandler]:
        return self._handlers.get(step_type)

    @property
    def available_types(self) -> list:
        return [t.value for t in self._handlers]

    async def dispatch(self, step: WorkflowStep, view: ExecutionView) -> StepResult:
        """Run the handler for ``step.type`` with timing and logging."""
        handler = self.get(step.type)
        if handler is None:
            raise HandlerError(f"Unsupported step type: {step.type.value}", step_id=step.id)

        start = time.monotonic()
        logger.debug("Step starting", execution_id=view.execution_id,
                     step_id=step.id, step_type=step.type.value)
        result = await handler.execute(step, view)
        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info("Step finished", execution_id=view.execution_id, step_id=step.id,
                    step_type=step.type.value, success=result.success,
                    cancelled=result.cancelled, duration_ms=result.duration_ms)
        return result


def create_default_registry(
    invoker: ActionInvoker,
    settings: Optional[Settings] = None,
    evaluator: Optional[ConditionEvaluator] = None,
) -> HandlerRegistry:
    """Registry with the five built-in step types."""
    settings = settings or get_settings()
    evaluator = evaluator or ConditionEvaluator()
    registry = HandlerRegistry()
    registry.register(StepType.ACTION, ActionHandler(invoker))
    registry.register(StepType.DELAY, DelayHandler(settings.WORKFLOW_DEFAULT_DELAY_MS))
    registry.register(StepType.CONDITION, ConditionHandler(evaluator))
    registry.register(StepType.LOOP, LoopHandler(evaluator, settings.WORKFLOW_MAX_LOOP_ITERATIONS))
    registry.register(StepType.PARALLEL, ParallelHandler())
    return registry
