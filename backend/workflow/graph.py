"""Workflow Graph Model: step lookup and structural validation.

Validation runs once, before an execution is created. The graph itself is
read-only: the executor and handlers only look steps up by id.
"""

from typing import Dict, Iterator, List, Optional

from core.constants import StepType
from core.exceptions import StructuralError
from workflow.models import Workflow, WorkflowStep


def step_references(step: WorkflowStep) -> List[str]:
    """Every step id a step can hand control to."""
    refs = list(step.next_steps)
    if step.type in (StepType.LOOP, StepType.PARALLEL):
        for key in ("join", "exit"):
            target = step.config.get(key)
            if target:
                refs.append(target)
    return refs


def validate_workflow(workflow: Workflow) -> None:
    """Check structural invariants of a workflow.

    Raises:
        StructuralError: on duplicate ids, dangling references, a condition
            step without an expression or with more than two next steps, a
            non-string condition expression, or a step nothing leads to.
    """
    index: Dict[str, WorkflowStep] = {}
    for step in workflow.steps:
        if step.id in index:
            raise StructuralError(f"Duplicate step id '{step.id}'")
        index[step.id] = step

    has_predecessor = set()
    for step in workflow.steps:
        for ref in step_references(step):
            if ref not in index:
                raise StructuralError(
                    f"Step '{step.id}' references missing step '{ref}'",
                    missing_step_id=ref,
                )
            if ref != step.id:
                has_predecessor.add(ref)

        expression = step.condition or step.config.get("expression")
        if step.type == StepType.CONDITION:
            if not expression:
                raise StructuralError(f"Condition step '{step.id}' has no condition expression")
            if len(step.next_steps) > 2:
                raise StructuralError(
                    f"Condition step '{step.id}' has {len(step.next_steps)} next steps; at most 2 are allowed"
                )
        if step.type in (StepType.CONDITION, StepType.LOOP) and expression and not isinstance(expression, str):
            raise StructuralError(f"Step '{step.id}' has a non-string condition expression")

    entry = workflow.entry_step_id
    for step in workflow.steps:
        if step.id != entry and step.id not in has_predecessor:
            raise StructuralError(
                f"Step '{step.id}' is unreachable: no step leads to it and it is not the entry step"
            )


class WorkflowGraph:
    """In-memory graph of a workflow's steps with O(1) lookup by id."""

    def __init__(self, workflow: Workflow):
        self.workflow = workflow
        self._steps: Dict[str, WorkflowStep] = {s.id: s for s in workflow.steps}

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> "WorkflowGraph":
        """Validate and build. Raises StructuralError."""
        validate_workflow(workflow)
        return cls(workflow)

    @property
    def workflow_id(self) -> str:
        return self.workflow.id

    @property
    def entry_step_id(self) -> Optional[str]:
        return self.workflow.entry_step_id

    def get(self, step_id: str) -> Optional[WorkflowStep]:
        return self._steps.get(step_id)

    def successor(self, step: WorkflowStep) -> Optional[str]:
        """Default successor: ``next_steps[0]`` or None for a terminal step."""
        return step.next_steps[0] if step.next_steps else None

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[WorkflowStep]:
        return iter(self.workflow.steps)

    def __len__(self) -> int:
        return len(self._steps)
