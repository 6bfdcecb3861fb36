"""Shared pytest fixtures for the workflow engine test suite.

Provides:
- Test settings (short delays, small step caps)
- In-memory record store and an action registry with recording actions
- A WorkflowEngine wired to both
- In-memory async SQLite database for the SQLAlchemy record store
- Small workflow builders
"""

import asyncio
import os
from typing import Any, Dict, List

import pytest
import pytest_asyncio

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ANTHROPIC_API_KEY", "")

from app.config import Settings  # noqa: E402
from db.database import create_db_engine, create_session_factory, init_db  # noqa: E402
from services.record_store import InMemoryRecordStore, SqlAlchemyRecordStore  # noqa: E402
from tasks.registry import TaskRegistry  # noqa: E402
from workflow.engine import WorkflowEngine  # noqa: E402
from workflow.models import Workflow, WorkflowStep  # noqa: E402


# ---------------------------------------------------------------------------
# Settings / collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENVIRONMENT="testing",
        ANTHROPIC_API_KEY="",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        WORKFLOW_DEFAULT_DELAY_MS=10,
        WORKFLOW_MAX_LOOP_ITERATIONS=20,
        WORKFLOW_MAX_STEPS=500,
    )


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def calls() -> List[Dict[str, Any]]:
    """Every action invocation, in order: {"action", "step_id", "parameters"}."""
    return []


@pytest.fixture
def tasks(calls) -> TaskRegistry:
    """Task registry with recording actions.

    - ``record``: returns its parameters
    - ``fail``: always raises
    - ``slow``: sleeps ``seconds`` then returns
    """
    registry = TaskRegistry()

    async def record(params, context):
        calls.append({"action": "record", "step_id": context["step_id"], "parameters": params})
        return {"echo": params}

    async def fail(params, context):
        calls.append({"action": "fail", "step_id": context["step_id"], "parameters": params})
        raise RuntimeError(params.get("reason", "boom"))

    async def slow(params, context):
        calls.append({"action": "slow", "step_id": context["step_id"], "parameters": params})
        await asyncio.sleep(params.get("seconds", 0.05))
        return {"slept": params.get("seconds", 0.05)}

    registry.register_function("record", record)
    registry.register_function("fail", fail)
    registry.register_function("slow", slow)
    return registry


@pytest.fixture
def engine(store, tasks, settings) -> WorkflowEngine:
    return WorkflowEngine(store=store, action_invoker=tasks, settings=settings)


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(settings):
    """Fresh in-memory SQLite engine with all tables created."""
    engine = create_db_engine(settings=settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def sql_store(db_engine) -> SqlAlchemyRecordStore:
    return SqlAlchemyRecordStore(create_session_factory(db_engine))


# ---------------------------------------------------------------------------
# Workflow builders
# ---------------------------------------------------------------------------

def action(step_id: str, next_steps=None, action_id: str = "record", **config) -> Dict[str, Any]:
    """Action step dict calling ``action_id`` with ``config`` as extra config keys."""
    step_config = {"actionId": action_id, "parameters": {"step": step_id}}
    step_config.update(config)
    return {"id": step_id, "name": step_id.upper(), "type": "action",
            "config": step_config, "nextSteps": list(next_steps or [])}


def make_workflow(steps: List[Dict[str, Any]], variables=None, **fields) -> Workflow:
    return Workflow(
        name=fields.pop("name", "Test workflow"),
        steps=[WorkflowStep.model_validate(s) for s in steps],
        variables=variables or {},
        **fields,
    )


def executed_step_ids(calls: List[Dict[str, Any]]) -> List[str]:
    return [c["step_id"] for c in calls]
