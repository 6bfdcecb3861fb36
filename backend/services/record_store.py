"""Record stores for workflow definitions and execution state.

The engine talks to persistence only through the ``RecordStore`` protocol:
plain JSON-compatible dicts in, plain dicts out. Two implementations ship:

- ``InMemoryRecordStore`` for tests and embedded use. Records are copied
  through a JSON round trip so callers never share mutable state with it.
- ``SqlAlchemyRecordStore`` backed by the ``workflows`` and
  ``workflow_executions`` tables (SQLite via aiosqlite, or any async
  SQLAlchemy dialect).
"""

import json
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from db.models.execution import ExecutionRecord
from db.models.workflow import WorkflowRecord

logger = structlog.get_logger(__name__)


class RecordStore(Protocol):
    """Persistence collaborator used by the engine and the checkpointer."""

    async def create_workflow(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def create_execution(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def update_execution(self, execution_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        ...


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(record))


class InMemoryRecordStore:
    """Dict-backed record store."""

    def __init__(self):
        self.workflows: Dict[str, Dict[str, Any]] = {}
        self.executions: Dict[str, Dict[str, Any]] = {}

    async def create_workflow(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if record["id"] in self.workflows:
            raise ValueError(f"Workflow {record['id']} already exists")
        self.workflows[record["id"]] = _copy(record)
        return _copy(record)

    async def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        record = self.workflows.get(workflow_id)
        return _copy(record) if record is not None else None

    async def create_execution(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if record["id"] in self.executions:
            raise ValueError(f"Execution {record['id']} already exists")
        self.executions[record["id"]] = _copy(record)
        return _copy(record)

    async def update_execution(self, execution_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        if execution_id not in self.executions:
            raise KeyError(f"Execution {execution_id} not found")
        self.executions[execution_id].update(_copy(partial))
        return _copy(self.executions[execution_id])

    async def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        record = self.executions.get(execution_id)
        return _copy(record) if record is not None else None


class SqlAlchemyRecordStore:
    """Record store over async SQLAlchemy sessions.

    Each operation runs in its own session and transaction.

    Usage:
        engine = create_db_engine()
        await init_db(engine)
        store = SqlAlchemyRecordStore(create_session_factory(engine))
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    # ─── Workflows ─────────────────────────────────────────

    async def create_workflow(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(WorkflowRecord(
                    id=record["id"],
                    name=record.get("name", ""),
                    status=record.get("status", "draft"),
                    definition=_copy(record),
                ))
        logger.debug("Workflow record stored", workflow_id=record["id"])
        return _copy(record)

    async def get_workflow(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            row = await session.get(WorkflowRecord, workflow_id)
            return _copy(row.definition) if row is not None else None

    # ─── Executions ────────────────────────────────────────

    async def create_execution(self, record: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(ExecutionRecord(
                    id=record["id"],
                    workflow_id=record["workflow_id"],
                    status=record.get("status", "pending"),
                    error=record.get("error"),
                    state=_copy(record),
                ))
        return _copy(record)

    async def update_execution(self, execution_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(ExecutionRecord).where(ExecutionRecord.id == execution_id)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise KeyError(f"Execution {execution_id} not found")

                # JSON columns only track reassignment
                row.state = {**row.state, **_copy(partial)}
                if "status" in partial:
                    row.status = partial["status"]
                if "error" in partial:
                    row.error = partial["error"]
                return _copy(row.state)

    async def get_execution(self, execution_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            row = await session.get(ExecutionRecord, execution_id)
            return _copy(row.state) if row is not None else None
