"""Built-in workflow templates.

Starting points for common automations. Each template carries a full
workflow body; ``instantiate_template`` turns one into a fresh draft
Workflow with its variables overridden.
"""

import copy
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from workflow.graph import validate_workflow
from workflow.models import Workflow


class WorkflowTemplate(BaseModel):
    """A reusable workflow starting point."""

    id: str
    name: str
    description: str
    category: str
    tags: List[str] = Field(default_factory=list)
    workflow: Dict[str, Any]
    is_public: bool = True
    usage_count: int = 0


_TEMPLATES: List[WorkflowTemplate] = [
    WorkflowTemplate(
        id="content_research",
        name="Content Research Workflow",
        description="Research a topic, extract key information, and create a summary report",
        category="research",
        tags=["research", "content", "analysis"],
        workflow={
            "name": "Content Research",
            "description": "Automated content research and analysis",
            "trigger": {"kind": "manual", "config": {}},
            "variables": {"topic": "", "searchDepth": 5, "includeSources": True},
            "steps": [
                {
                    "id": "search",
                    "name": "Search for information",
                    "type": "action",
                    "config": {
                        "actionId": "web-search",
                        "parameters": {"query": "${topic}", "limit": "${searchDepth}"},
                        "outputVariable": "searchResults",
                    },
                    "nextSteps": ["has_results"],
                },
                {
                    "id": "has_results",
                    "name": "Any results?",
                    "type": "condition",
                    "condition": "${search.success} && ${searchDepth} > 0",
                    "nextSteps": ["summarize"],
                },
                {
                    "id": "summarize",
                    "name": "Summarize findings",
                    "type": "action",
                    "config": {
                        "actionId": "summarize",
                        "parameters": {"input": "${searchResults}", "includeSources": "${includeSources}"},
                    },
                    "nextSteps": ["save_notes"],
                },
                {
                    "id": "save_notes",
                    "name": "Save research notes",
                    "type": "action",
                    "config": {"actionId": "create-notes", "parameters": {"title": "Research: ${topic}"}},
                    "nextSteps": [],
                },
            ],
        },
    ),
    WorkflowTemplate(
        id="data_extraction",
        name="Data Extraction Pipeline",
        description="Extract structured data from web pages and export to various formats",
        category="data",
        tags=["extraction", "data", "automation"],
        workflow={
            "name": "Data Extraction",
            "description": "Extract and process data from web sources",
            "trigger": {"kind": "manual", "config": {}},
            "variables": {"urls": [], "outputFormat": "json", "dataSchema": {}},
            "steps": [
                {
                    "id": "extract",
                    "name": "Extract pages in parallel",
                    "type": "parallel",
                    "config": {"join": "export"},
                    "nextSteps": ["extract_content", "extract_metadata"],
                },
                {
                    "id": "extract_content",
                    "name": "Extract content",
                    "type": "action",
                    "config": {
                        "actionId": "extract-data",
                        "parameters": {"urls": "${urls}", "schema": "${dataSchema}"},
                    },
                    "nextSteps": ["export"],
                },
                {
                    "id": "extract_metadata",
                    "name": "Extract metadata",
                    "type": "action",
                    "config": {"actionId": "extract-metadata", "parameters": {"urls": "${urls}"}},
                    "nextSteps": ["export"],
                },
                {
                    "id": "export",
                    "name": "Export results",
                    "type": "action",
                    "config": {"actionId": "export-data", "parameters": {"format": "${outputFormat}"}},
                    "nextSteps": [],
                },
            ],
        },
    ),
    WorkflowTemplate(
        id="social_media_monitor",
        name="Social Media Monitor",
        description="Monitor social media for keywords and generate sentiment analysis reports",
        category="monitoring",
        tags=["social", "monitoring", "sentiment"],
        workflow={
            "name": "Social Media Monitoring",
            "description": "Monitor and analyze social media content",
            "trigger": {"kind": "scheduled", "config": {"interval": "1h"}},
            "variables": {"keywords": [], "platforms": ["twitter", "reddit"], "sentimentThreshold": 0.5},
            "steps": [
                {
                    "id": "poll",
                    "name": "Poll each platform",
                    "type": "loop",
                    "config": {"count": 2, "maxIterations": 10},
                    "nextSteps": ["fetch_mentions", "analyze"],
                },
                {
                    "id": "fetch_mentions",
                    "name": "Fetch mentions",
                    "type": "action",
                    "config": {
                        "actionId": "fetch-mentions",
                        "parameters": {"keywords": "${keywords}", "platforms": "${platforms}"},
                    },
                    "nextSteps": ["pause"],
                },
                {
                    "id": "pause",
                    "name": "Respect rate limits",
                    "type": "delay",
                    "config": {"durationMs": 0},
                    "nextSteps": ["poll"],
                },
                {
                    "id": "analyze",
                    "name": "Sentiment analysis",
                    "type": "action",
                    "config": {
                        "actionId": "analyze-sentiment",
                        "parameters": {"threshold": "${sentimentThreshold}"},
                    },
                    "nextSteps": [],
                },
            ],
        },
    ),
]


def get_workflow_templates(category: Optional[str] = None) -> List[WorkflowTemplate]:
    """List built-in templates, optionally filtered by category."""
    templates = [t.model_copy(deep=True) for t in _TEMPLATES]
    if category:
        return [t for t in templates if t.category == category]
    return templates


def get_workflow_template(template_id: str) -> Optional[WorkflowTemplate]:
    for template in _TEMPLATES:
        if template.id == template_id:
            return template.model_copy(deep=True)
    return None


def instantiate_template(template_id: str, **variables: Any) -> Workflow:
    """Create a new draft workflow from a template.

    Raises:
        KeyError: unknown template id
    """
    template = get_workflow_template(template_id)
    if template is None:
        raise KeyError(f"Unknown workflow template: {template_id}")

    body = copy.deepcopy(template.workflow)
    body["variables"] = {**body.get("variables", {}), **variables}
    workflow = Workflow.model_validate(body)
    validate_workflow(workflow)
    return workflow
