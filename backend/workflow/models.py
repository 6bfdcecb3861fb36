"""Workflow definition models.

A Workflow is an immutable-once-activated definition: an ordered list of
steps linked by ``next_steps`` plus default variables and a trigger.
Definitions are validated by pydantic on the way in and dumped to plain
JSON-ready dicts on the way to the record store.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from core.constants import StepType, TriggerKind, WorkflowStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_workflow_id() -> str:
    return f"workflow_{uuid4().hex}"


class WorkflowTrigger(BaseModel):
    """What starts executions of a workflow. Config is opaque to the engine."""

    model_config = ConfigDict(populate_by_name=True)

    kind: TriggerKind = Field(default=TriggerKind.MANUAL, description="Trigger kind")
    config: Dict[str, Any] = Field(default_factory=dict, description="Trigger configuration")

    @model_validator(mode="before")
    @classmethod
    def _accept_type_key(cls, data: Any) -> Any:
        # Generated plans use {"type": "schedule"} for the trigger kind
        if isinstance(data, dict) and "kind" not in data and "type" in data:
            data = {**data, "kind": data["type"]}
            data.pop("type")
        if isinstance(data, dict) and data.get("kind") == "schedule":
            data = {**data, "kind": TriggerKind.SCHEDULED.value}
        return data


class WorkflowStep(BaseModel):
    """A single node in the workflow graph."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, description="Unique within the workflow")
    name: str = Field(default="", description="Human-readable step name")
    description: str = Field(default="", description="What the step does")
    type: StepType = Field(default=StepType.ACTION, description="Handler type")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler-specific configuration")
    next_steps: List[str] = Field(default_factory=list, alias="nextSteps", description="Successor step ids")
    condition: Optional[str] = Field(default=None, description="Boolean expression (condition and loop steps)")

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def is_terminal(self) -> bool:
        return not self.next_steps


class Workflow(BaseModel):
    """A reusable, versioned definition of a step graph."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_workflow_id)
    name: str = Field(min_length=1)
    description: str = ""
    version: str = "1.0.0"
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: WorkflowTrigger = Field(default_factory=WorkflowTrigger)
    steps: List[WorkflowStep] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")
    created_by: Optional[str] = Field(default=None, alias="createdBy")

    @property
    def entry_step_id(self) -> Optional[str]:
        return self.steps[0].id if self.steps else None

    def to_record(self) -> Dict[str, Any]:
        """Dump to the JSON-ready dict handed to the record store."""
        return self.model_dump(mode="json")

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Workflow":
        return cls.model_validate(data)
