"""Tests for the in-memory and SQLAlchemy record stores."""

import pytest

from conftest import action, make_workflow
from core.constants import ExecutionStatus
from services.record_store import InMemoryRecordStore
from workflow.engine import WorkflowEngine


def execution_record(execution_id="exec_1"):
    return {
        "id": execution_id,
        "workflow_id": "wf-1",
        "status": "pending",
        "variables": {"a": 1},
        "results": {},
        "error": None,
        "trigger_data": {"by": "test"},
    }


@pytest.mark.unit
class TestInMemoryRecordStore:

    async def test_returns_copies(self):
        store = InMemoryRecordStore()
        record = execution_record()
        await store.create_execution(record)

        record["variables"]["a"] = 99
        loaded = await store.get_execution("exec_1")
        assert loaded["variables"] == {"a": 1}

        loaded["variables"]["a"] = 42
        assert (await store.get_execution("exec_1"))["variables"] == {"a": 1}

    async def test_update_merges(self):
        store = InMemoryRecordStore()
        await store.create_execution(execution_record())
        merged = await store.update_execution("exec_1", {"status": "running"})
        assert merged["status"] == "running"
        assert merged["trigger_data"] == {"by": "test"}

    async def test_update_unknown(self):
        with pytest.raises(KeyError):
            await InMemoryRecordStore().update_execution("exec_nope", {"status": "running"})

    async def test_duplicate_workflow(self):
        store = InMemoryRecordStore()
        await store.create_workflow({"id": "wf-1", "name": "a"})
        with pytest.raises(ValueError):
            await store.create_workflow({"id": "wf-1", "name": "b"})

    async def test_missing_records(self):
        store = InMemoryRecordStore()
        assert await store.get_workflow("nope") is None
        assert await store.get_execution("nope") is None


@pytest.mark.integration
class TestSqlAlchemyRecordStore:

    async def test_workflow_round_trip(self, sql_store):
        workflow = make_workflow([action("a", ["b"]), action("b")], variables={"topic": "x"})
        await sql_store.create_workflow(workflow.to_record())

        loaded = await sql_store.get_workflow(workflow.id)
        assert loaded == workflow.to_record()
        assert await sql_store.get_workflow("workflow_missing") is None

    async def test_execution_create_update_get(self, sql_store):
        await sql_store.create_execution(execution_record())
        await sql_store.update_execution("exec_1", {"status": "running", "variables": {"a": 2}})
        await sql_store.update_execution("exec_1", {"status": "failed", "error": "boom"})

        loaded = await sql_store.get_execution("exec_1")
        assert loaded["status"] == "failed"
        assert loaded["error"] == "boom"
        assert loaded["variables"] == {"a": 2}
        assert loaded["trigger_data"] == {"by": "test"}

    async def test_indexed_columns_follow_state(self, sql_store):
        from db.models.execution import ExecutionRecord

        await sql_store.create_execution(execution_record())
        await sql_store.update_execution("exec_1", {"status": "cancelled"})
        async with sql_store.session_factory() as session:
            row = await session.get(ExecutionRecord, "exec_1")
            assert row.status == "cancelled"
            assert row.workflow_id == "wf-1"

    async def test_update_unknown(self, sql_store):
        with pytest.raises(KeyError):
            await sql_store.update_execution("exec_nope", {"status": "running"})

    async def test_engine_on_sql_store(self, sql_store, tasks, settings):
        engine = WorkflowEngine(store=sql_store, action_invoker=tasks, settings=settings)
        workflow = make_workflow([action("a", ["b"]), action("b")])
        await engine.create_workflow(workflow)

        state = await engine.execute_workflow(workflow.id)
        stored = await engine.get_execution(state.id)

        assert state.status == ExecutionStatus.COMPLETED
        assert stored.to_dict() == state.to_dict()
