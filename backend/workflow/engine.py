"""Workflow Executor: the control loop of a workflow run.

Drives one execution through ``pending -> running -> completed | failed |
cancelled``. Each step is resolved, dispatched to its handler, recorded and
checkpointed before the next one starts. Loop bodies and parallel branches
are sub-traversals of the same loop, reached through the handler view.

Every failure below the executor ends as a terminal ``failed`` state with an
error message and an ``ErrorKind``; nothing escapes a running execution.
Structural problems are caught before an execution exists.

Usage::

    engine = WorkflowEngine(store=InMemoryRecordStore(), action_invoker=tasks)
    await engine.create_workflow(workflow)
    state = await engine.execute_workflow(workflow.id, {"topic": "llamas"})
"""

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Dict, Optional, Set

import structlog

from app.config import Settings, get_settings
from core.constants import ExecutionStatus, StepType
from core.exceptions import (
    HandlerError,
    PersistenceError,
    StepNotFound,
    WorkflowEngineError,
    WorkflowNotFoundError,
)
from workflow.checkpoint import CheckpointType, ExecutionCheckpointer
from workflow.conditions import ConditionEvaluator
from workflow.graph import WorkflowGraph, validate_workflow
from workflow.handlers import (
    ActionInvoker,
    BranchOutcome,
    ExecutionView,
    HandlerRegistry,
    create_default_registry,
    loop_exit_step_id,
)
from workflow.models import Workflow, WorkflowStep
from workflow.planner import PlanGeneratorAdapter
from workflow.state import ExecutionState, StepResult

logger = structlog.get_logger(__name__)


@dataclass
class _RunningExecution:
    state: ExecutionState
    graph: WorkflowGraph
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    steps_visited: int = 0


class WorkflowEngine:
    """Main workflow execution engine.

    All collaborators are passed in; several engines can live in one
    process. Executions run as independent asyncio tasks and share no
    mutable state.
    """

    def __init__(
        self,
        store,
        action_invoker: ActionInvoker,
        plan_generator=None,
        registry: Optional[HandlerRegistry] = None,
        checkpointer: Optional[ExecutionCheckpointer] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.plan_generator = plan_generator
        self.registry = registry or create_default_registry(
            action_invoker, settings=self.settings, evaluator=ConditionEvaluator()
        )
        self.checkpointer = checkpointer or ExecutionCheckpointer(store)
        self._running: Dict[str, _RunningExecution] = {}

    # ─── Definitions ───────────────────────────────────────────

    async def create_workflow(self, workflow: Workflow) -> Workflow:
        """Validate and store a workflow definition."""
        validate_workflow(workflow)
        try:
            await self.store.create_workflow(workflow.to_record())
        except Exception as e:
            raise PersistenceError(f"Failed to create workflow {workflow.id}: {e}") from e
        logger.info("Workflow created", workflow_id=workflow.id, steps=len(workflow.steps))
        return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        try:
            record = await self.store.get_workflow(workflow_id)
        except Exception as e:
            raise PersistenceError(f"Failed to load workflow {workflow_id}: {e}") from e
        return Workflow.from_record(record) if record else None

    async def generate_workflow(self, description: str) -> Workflow:
        """Turn a natural-language description into a stored workflow."""
        if self.plan_generator is None:
            raise RuntimeError("No plan generator configured")
        workflow = await PlanGeneratorAdapter(self.plan_generator).generate_workflow(description)
        return await self.create_workflow(workflow)

    # ─── Executions ────────────────────────────────────────────

    async def start_execution(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Start a run in the background and return its execution id.

        Raises:
            WorkflowNotFoundError: unknown workflow id
            StructuralError: the definition fails validation
            PersistenceError: the initial record could not be written
        """
        workflow = await self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return await self._start(WorkflowGraph.from_workflow(workflow), trigger_data)

    async def execute_workflow(
        self,
        workflow_id: str,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionState:
        """Run a stored workflow to a terminal state."""
        execution_id = await self.start_execution(workflow_id, trigger_data)
        return await self.wait_for_execution(execution_id)

    async def execute_graph(
        self,
        graph: WorkflowGraph,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionState:
        """Run an already built graph to a terminal state."""
        execution_id = await self._start(graph, trigger_data)
        return await self.wait_for_execution(execution_id)

    async def wait_for_execution(self, execution_id: str) -> Optional[ExecutionState]:
        """Wait for a running execution; for finished ones, load from the store."""
        running = self._running.get(execution_id)
        if running is None or running.task is None:
            return await self.get_execution(execution_id)
        return await asyncio.shield(running.task)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation. True if the execution was running."""
        running = self._running.get(execution_id)
        if running is None:
            return False
        running.cancel_event.set()
        logger.info("Execution marked for cancellation", execution_id=execution_id)
        return True

    async def get_execution(self, execution_id: str) -> Optional[ExecutionState]:
        """Read the last checkpointed state of an execution."""
        return await self.checkpointer.load(execution_id)

    def get_running_executions(self) -> Dict[str, dict]:
        """Status of all running executions."""
        return {
            eid: {
                "workflow_id": run.state.workflow_id,
                "status": run.state.status.value,
                "current_step": run.state.current_step_id,
                "steps_recorded": sum(len(h) for h in run.state.results.values()),
                "cancel_requested": run.cancel_event.is_set(),
            }
            for eid, run in self._running.items()
        }

    # ─── Control loop ──────────────────────────────────────────

    async def _start(self, graph: WorkflowGraph, trigger_data: Optional[Dict[str, Any]]) -> str:
        state = ExecutionState.create(
            workflow_id=graph.workflow_id,
            variables=graph.workflow.variables,
            trigger_data=trigger_data,
        )
        await self.checkpointer.create(state)

        running = _RunningExecution(state=state, graph=graph)
        self._running[state.id] = running
        running.task = asyncio.create_task(self._run(running), name=f"execution:{state.id}")
        logger.info("Execution started", execution_id=state.id, workflow_id=graph.workflow_id)
        return state.id

    async def _run(self, running: _RunningExecution) -> ExecutionState:
        """Drive one execution to a terminal status and return its final state.

        After a checkpoint write fails, one more write of the failed state is
        attempted. If that write succeeds it replaces the last good checkpoint
        with the failed record, so the store reflects the terminal status.
        """
        state = running.state
        log = logger.bind(execution_id=state.id, workflow_id=state.workflow_id)

        try:
            state.transition(ExecutionStatus.RUNNING)
            await self.checkpointer.save(state, CheckpointType.EXECUTION_RUNNING)

            outcome = await self._traverse(running, running.graph.entry_step_id, set())

            if outcome.cancelled:
                state.transition(ExecutionStatus.CANCELLED)
                log.info("Execution cancelled", current_step=state.current_step_id)
                await self._save_terminal(state, CheckpointType.EXECUTION_CANCELLED)
            else:
                state.transition(ExecutionStatus.COMPLETED)
                log.info("Execution completed", steps=len(state.results))
                await self._save_terminal(state, CheckpointType.EXECUTION_COMPLETED)

        except PersistenceError as e:
            log.error("Execution stopped: checkpoint write failed", error=str(e))
            if not state.is_terminal:
                state.fail(e, step_id=state.current_step_id)
                await self._save_terminal(state, CheckpointType.EXECUTION_FAILED)

        except WorkflowEngineError as e:
            step_id = getattr(e, "step_id", None) or state.current_step_id
            log.error("Execution failed", error=str(e), kind=e.kind.value, step_id=step_id)
            state.fail(e, step_id=step_id)
            await self._save_terminal(state, CheckpointType.EXECUTION_FAILED)

        except asyncio.CancelledError:
            log.warning("Execution task cancelled")
            if not state.is_terminal:
                state.transition(ExecutionStatus.CANCELLED)
                await self._save_terminal(state, CheckpointType.EXECUTION_CANCELLED)
            raise

        except Exception as e:
            log.error("Execution failed with unexpected error", error=str(e), exc_info=True)
            if not state.is_terminal:
                state.fail(HandlerError(str(e)), step_id=state.current_step_id)
                await self._save_terminal(state, CheckpointType.EXECUTION_FAILED)

        finally:
            self._running.pop(state.id, None)
            self.checkpointer.cleanup(state.id)

        return state

    async def _save_terminal(self, state: ExecutionState, checkpoint_type: CheckpointType) -> None:
        try:
            await self.checkpointer.save(state, checkpoint_type)
        except PersistenceError as e:
            # The store keeps the last good checkpoint
            logger.error("Final checkpoint failed", execution_id=state.id,
                         status=state.status.value, error=str(e))

    async def _traverse(
        self,
        running: _RunningExecution,
        start_step_id: Optional[str],
        stop_at: Set[str],
    ) -> BranchOutcome:
        """Follow the graph from ``start_step_id`` until a terminal step or a stop id."""
        state = running.state
        graph = running.graph
        outcome = BranchOutcome(start_step_id=start_step_id or "")
        current = start_step_id

        while current is not None and current not in stop_at:
            if running.cancel_event.is_set():
                outcome.cancelled = True
                return outcome

            running.steps_visited += 1
            if running.steps_visited > self.settings.WORKFLOW_MAX_STEPS:
                raise HandlerError(
                    f"Execution exceeded {self.settings.WORKFLOW_MAX_STEPS} step visits",
                    step_id=current,
                )

            step = graph.get(current)
            if step is None:
                raise StepNotFound(current)

            state.current_step_id = current
            view = ExecutionView(state, running.cancel_event, partial(self._traverse, running), stop_at)
            try:
                result = await self.registry.dispatch(step, view)
            except (WorkflowEngineError, asyncio.CancelledError):
                raise
            except Exception as e:
                raise HandlerError(f"Step '{current}' failed: {e}", step_id=current) from e

            state.record_result(result)
            outcome.last_step_id = current

            if result.cancelled:
                await self.checkpointer.save(state, CheckpointType.STEP_COMPLETED, step_id=current)
                outcome.cancelled = True
                return outcome

            next_id = self._next_step_id(graph, step, result)
            state.current_step_id = next_id or current
            await self.checkpointer.save(state, CheckpointType.STEP_COMPLETED, step_id=current)
            current = next_id

        return outcome

    @staticmethod
    def _next_step_id(graph: WorkflowGraph, step: WorkflowStep, result: StepResult) -> Optional[str]:
        """Pick the successor for a finished step."""
        if step.type == StepType.CONDITION:
            taken = bool((result.output or {}).get("result"))
            index = 0 if taken else 1
            return step.next_steps[index] if len(step.next_steps) > index else None

        if step.type == StepType.LOOP:
            return loop_exit_step_id(step)

        if step.type == StepType.PARALLEL:
            return step.config.get("join")

        return graph.successor(step)
