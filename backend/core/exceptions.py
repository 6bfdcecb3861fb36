"""Custom exceptions for the workflow engine."""

from typing import Optional

from core.constants import ErrorKind


class WorkflowEngineError(Exception):
    """Base exception for the workflow engine."""

    kind: ErrorKind = ErrorKind.HANDLER

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        """Initialize exception with message and error kind.

        Args:
            message: Human-readable error message
            kind: Structured error kind recorded on failed executions
        """
        self.message = message
        if kind is not None:
            self.kind = kind
        super().__init__(self.message)


class StructuralError(WorkflowEngineError):
    """Workflow graph is malformed (dangling reference, duplicate or unreachable step)."""

    kind = ErrorKind.STRUCTURAL

    def __init__(self, message: str, missing_step_id: Optional[str] = None):
        self.missing_step_id = missing_step_id
        super().__init__(message)


class StepNotFound(WorkflowEngineError):
    """A step id could not be resolved while an execution was running."""

    kind = ErrorKind.STEP_NOT_FOUND

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Step '{step_id}' not found in workflow")


class ConditionError(WorkflowEngineError):
    """Condition expression could not be parsed or did not yield a boolean."""

    kind = ErrorKind.CONDITION


class HandlerError(WorkflowEngineError):
    """A step handler failed."""

    kind = ErrorKind.HANDLER

    def __init__(self, message: str, step_id: Optional[str] = None):
        self.step_id = step_id
        super().__init__(message)


class PersistenceError(WorkflowEngineError):
    """A checkpoint write or read against the record store failed."""

    kind = ErrorKind.PERSISTENCE


class MalformedPlan(WorkflowEngineError):
    """A generated plan cannot be turned into a workflow."""

    kind = ErrorKind.MALFORMED_PLAN


class WorkflowNotFoundError(WorkflowEngineError):
    """Workflow definition not found in the record store."""

    kind = ErrorKind.WORKFLOW_NOT_FOUND

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class ActionFailedError(WorkflowEngineError):
    """An action invocation reported failure."""

    kind = ErrorKind.ACTION_FAILED

    def __init__(self, action_id: str, message: str):
        self.action_id = action_id
        super().__init__(message)
