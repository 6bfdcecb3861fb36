"""Plan Generator Adapter: natural-language description to validated Workflow.

The plan generator is an opaque text-completion collaborator. Whatever it
returns is normalized here: missing step ids are assigned sequentially,
omitted ``nextSteps`` become a linear chain and definition defaults are
applied. A plan that cannot be read as a workflow is rejected with
MalformedPlan rather than coerced.
"""

from typing import Any, Dict, List, Optional, Protocol

import structlog
from pydantic import ValidationError

from app.config import Settings, get_settings
from core.constants import TriggerKind, WorkflowStatus
from core.exceptions import MalformedPlan
from integrations.claude_client import ClaudeClient, extract_json
from workflow.graph import validate_workflow
from workflow.models import Workflow

logger = structlog.get_logger(__name__)

PLAN_PROMPT_TEMPLATE = """
Create a detailed workflow automation plan based on the following description:

Description: "{description}"

Please provide a JSON response with:
1. name: A descriptive name for the workflow
2. description: A clear description of what the workflow does
3. trigger: The trigger kind (manual, scheduled, event, webhook) and configuration
4. steps: An array of workflow steps with appropriate types and configurations
5. variables: Any required variables for the workflow

Each step should include:
- id: unique identifier
- name: step name
- description: what the step does
- type: one of 'action', 'condition', 'loop', 'delay', 'parallel'
- config: configuration for the step (actions need config.actionId, delays config.durationMs)
- nextSteps: array of next step IDs (for conditions: [trueStep, falseStep])
- condition: (for condition and loop steps) a boolean expression such as ${{count}} > 3

Use realistic action ids like 'web-search', 'extract-data', 'create-notes', 'send-email', etc.
Respond with JSON only.
"""


class PlanGenerator(Protocol):
    """External NL-to-plan collaborator."""

    async def generate(self, prompt_text: str) -> Any:
        ...


def build_plan_prompt(description: str) -> str:
    return PLAN_PROMPT_TEMPLATE.format(description=description.replace('"', "'"))


def _normalize_steps(raw_steps: List[Any]) -> List[Dict[str, Any]]:
    steps: List[Dict[str, Any]] = []
    for index, raw_step in enumerate(raw_steps):
        if not isinstance(raw_step, dict):
            raise MalformedPlan(f"Step {index + 1} is not an object")
        step = dict(raw_step)
        step["id"] = step.get("id") or f"step_{index + 1}"
        step["name"] = step.get("name") or f"Step {index + 1}"
        step["type"] = step.get("type") or "action"

        config = step.get("config") or {}
        if not isinstance(config, dict):
            raise MalformedPlan(f"Step '{step['id']}' config is not an object")
        config = dict(config)
        # Some plans put action fields on the step itself
        for key in ("actionId", "parameters"):
            if key in step and key not in config:
                config[key] = step.pop(key)
        step["config"] = config
        steps.append(step)

    for index, step in enumerate(steps):
        if step.get("nextSteps") is None and step.get("next_steps") is None:
            step.pop("next_steps", None)
            step["nextSteps"] = [steps[index + 1]["id"]] if index < len(steps) - 1 else []
    return steps


def build_workflow_from_plan(raw_plan: Any) -> Workflow:
    """Turn a raw generated plan into a validated Workflow.

    Raises:
        MalformedPlan: the plan is not an object, ``steps`` is not a list,
            or a field has the wrong shape
        StructuralError: the plan's step graph is inconsistent
    """
    if isinstance(raw_plan, (str, bytes)):
        text = raw_plan.decode() if isinstance(raw_plan, bytes) else raw_plan
        try:
            raw_plan = extract_json(text)
        except ValueError as e:
            raise MalformedPlan(f"Plan is not valid JSON: {e}") from e

    if not isinstance(raw_plan, dict):
        raise MalformedPlan(f"Plan must be a JSON object, got {type(raw_plan).__name__}")

    raw_steps = raw_plan.get("steps", [])
    if not isinstance(raw_steps, list):
        raise MalformedPlan(f"Plan steps must be a list, got {type(raw_steps).__name__}")

    data = dict(raw_plan)
    data["name"] = data.get("name") or "Untitled workflow"
    data["version"] = data.get("version") or "1.0.0"
    data["status"] = data.get("status") or WorkflowStatus.DRAFT.value
    data["variables"] = data.get("variables") or {}
    data["trigger"] = data.get("trigger") or {"kind": TriggerKind.MANUAL.value, "config": {}}
    data["steps"] = _normalize_steps(raw_steps)
    if not data.get("id"):
        data.pop("id", None)

    try:
        workflow = Workflow.model_validate(data)
    except ValidationError as e:
        raise MalformedPlan(f"Plan does not describe a valid workflow: {e}") from e

    validate_workflow(workflow)
    return workflow


class PlanGeneratorAdapter:
    """Runs the plan generator and adapts its output into a Workflow."""

    def __init__(self, generator: PlanGenerator):
        self.generator = generator

    async def generate_workflow(self, description: str) -> Workflow:
        raw_plan = await self.generator.generate(build_plan_prompt(description))
        workflow = build_workflow_from_plan(raw_plan)
        logger.info("Workflow generated from description",
                    workflow_id=workflow.id, steps=len(workflow.steps))
        return workflow


class ClaudePlanGenerator:
    """Plan generator backed by Claude."""

    def __init__(self, client: Optional[ClaudeClient] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.client = client or ClaudeClient(self.settings)
        self._owns_client = client is None

    async def generate(self, prompt_text: str) -> str:
        return await self.client.ask(prompt_text, system=self.settings.PLAN_SYSTEM_PROMPT)

    async def close(self) -> None:
        """Close the Claude client if this generator created it."""
        if self._owns_client:
            await self.client.close()

    async def __aenter__(self) -> "ClaudePlanGenerator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
