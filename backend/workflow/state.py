"""Execution state: the mutable record of one workflow run.

Holds the current position, variable bindings, per-step results and the
terminal outcome. Everything here round-trips through ``to_dict`` /
``from_dict`` so the checkpointer can persist it and rebuild it exactly.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from core.constants import ErrorKind, ExecutionStatus
from workflow.conditions import build_bindings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_execution_id() -> str:
    return f"exec_{uuid4().hex}"


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json_safe(value: Any) -> Any:
    """Return a JSON-serializable copy of value (non-serializable leaves become str)."""
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        if isinstance(value, dict):
            return {str(k): _json_safe(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [_json_safe(v) for v in value]
        return str(value)


_ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED},
}


class InvalidTransition(RuntimeError):
    """Raised when an execution is moved out of a terminal state."""


@dataclass
class StepResult:
    """Outcome of one visit to a step."""

    step_id: str
    success: bool = True
    message: str = ""
    output: Any = None
    timestamp: datetime = field(default_factory=utcnow)
    duration_ms: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "success": self.success,
            "message": self.message,
            "output": _json_safe(self.output),
            "timestamp": _to_iso(self.timestamp),
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            success=data.get("success", True),
            message=data.get("message", ""),
            output=data.get("output"),
            timestamp=_from_iso(data.get("timestamp")) or utcnow(),
            duration_ms=data.get("duration_ms", 0),
            cancelled=data.get("cancelled", False),
        )

    def binding(self) -> Dict[str, Any]:
        """The value a condition sees for this step id."""
        return {
            "success": self.success,
            "message": self.message,
            "output": self.output,
            "cancelled": self.cancelled,
        }


@dataclass
class ExecutionState:
    """One run of a Workflow.

    ``results`` maps a step id to every result recorded for it, in traversal
    order. Re-entering a step (loop bodies) appends instead of overwriting, so
    iteration history survives; conditions bind to the latest entry.
    """

    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    results: Dict[str, List[StepResult]] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    failed_step_id: Optional[str] = None
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    trigger_data: Optional[Dict[str, Any]] = None

    @classmethod
    def create(
        cls,
        workflow_id: str,
        variables: Optional[Dict[str, Any]] = None,
        trigger_data: Optional[Dict[str, Any]] = None,
    ) -> "ExecutionState":
        return cls(
            id=new_execution_id(),
            workflow_id=workflow_id,
            variables=_json_safe(dict(variables or {})),
            trigger_data=trigger_data,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: ExecutionStatus) -> None:
        """Move to a new status. Terminal statuses are absorbing."""
        if status == self.status:
            return
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(
                f"Execution {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()

    def fail(self, error: Exception, step_id: Optional[str] = None) -> None:
        self.error = str(error) or error.__class__.__name__
        self.error_kind = getattr(error, "kind", ErrorKind.HANDLER)
        self.failed_step_id = step_id
        self.transition(ExecutionStatus.FAILED)

    def record_result(self, result: StepResult) -> None:
        self.results.setdefault(result.step_id, []).append(result)

    def latest_result(self, step_id: str) -> Optional[StepResult]:
        history = self.results.get(step_id)
        return history[-1] if history else None

    def set_variables(self, values: Dict[str, Any]) -> None:
        self.variables.update(_json_safe(values))

    def add_warning(self, step_id: Optional[str], kind: ErrorKind, message: str) -> None:
        self.warnings.append({
            "step_id": step_id,
            "kind": kind.value,
            "message": message,
            "timestamp": _to_iso(utcnow()),
        })

    def bindings(self) -> Dict[str, Any]:
        """Variables merged with the latest result per step; results win on collision."""
        latest = {
            sid: history[-1].binding()
            for sid, history in self.results.items()
            if history
        }
        return build_bindings(self.variables, latest)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize full state for persistence."""
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "current_step_id": self.current_step_id,
            "variables": _json_safe(self.variables),
            "results": {
                sid: [r.to_dict() for r in history]
                for sid, history in self.results.items()
            },
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "failed_step_id": self.failed_step_id,
            "warnings": list(self.warnings),
            "started_at": _to_iso(self.started_at),
            "completed_at": _to_iso(self.completed_at),
            "trigger_data": _json_safe(self.trigger_data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionState":
        """Restore state from a persisted record."""
        state = cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            current_step_id=data.get("current_step_id"),
            variables=data.get("variables") or {},
            error=data.get("error"),
            error_kind=ErrorKind(data["error_kind"]) if data.get("error_kind") else None,
            failed_step_id=data.get("failed_step_id"),
            warnings=list(data.get("warnings") or []),
            started_at=_from_iso(data.get("started_at")) or utcnow(),
            completed_at=_from_iso(data.get("completed_at")),
            trigger_data=data.get("trigger_data"),
        )
        for sid, history in (data.get("results") or {}).items():
            state.results[sid] = [StepResult.from_dict(r) for r in history]
        return state
