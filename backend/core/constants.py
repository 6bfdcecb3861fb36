"""Constants and enums for the workflow engine."""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Lifecycle of a workflow definition, independent of any run."""

    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionStatus(str, Enum):
    """Workflow execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class TriggerKind(str, Enum):
    """What starts a workflow execution."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    EVENT = "event"
    WEBHOOK = "webhook"


class StepType(str, Enum):
    """Workflow step types."""

    ACTION = "action"
    CONDITION = "condition"
    LOOP = "loop"
    DELAY = "delay"
    PARALLEL = "parallel"


class ErrorKind(str, Enum):
    """Structured error kinds recorded on failed executions."""

    STRUCTURAL = "structural"
    STEP_NOT_FOUND = "step_not_found"
    CONDITION = "condition"
    HANDLER = "handler"
    PERSISTENCE = "persistence"
    MALFORMED_PLAN = "malformed_plan"
    WORKFLOW_NOT_FOUND = "workflow_not_found"
    ACTION_FAILED = "action_failed"
