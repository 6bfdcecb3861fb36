"""
Execution Checkpointer.

Persists the full execution state through the record store at every step
boundary: execution start, each step completion or failure, and the
terminal transition. The executor awaits every write before it moves on,
so the stored record never lags more than one step behind memory.

Concurrent branches of a parallel step share one checkpointer; writes for
an execution are serialized by a per-execution lock.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import structlog

from core.exceptions import PersistenceError
from workflow.state import ExecutionState

logger = structlog.get_logger(__name__)

# Fields fixed at creation; never part of an update.
_IMMUTABLE_FIELDS = ("id", "workflow_id", "started_at", "trigger_data")


class CheckpointType(str, Enum):
    """Types of execution checkpoints."""
    EXECUTION_STARTED = "execution_started"
    EXECUTION_RUNNING = "execution_running"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"


class ExecutionCheckpointer:
    """
    Writes execution state to the record store and rebuilds it by id.

    The checkpointer is the only writer of an execution's record for the
    lifetime of the run.
    """

    def __init__(self, store):
        self.store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._checkpoint_counts: Dict[str, int] = {}

    def _lock(self, execution_id: str) -> asyncio.Lock:
        if execution_id not in self._locks:
            self._locks[execution_id] = asyncio.Lock()
        return self._locks[execution_id]

    async def create(self, state: ExecutionState) -> Dict[str, Any]:
        """Write the initial record for a new execution."""
        data = state.to_dict()
        try:
            await self.store.create_execution(data)
        except Exception as e:
            logger.error("Failed to create execution record", execution_id=state.id, error=str(e))
            raise PersistenceError(f"Failed to create execution {state.id}: {e}") from e
        self._checkpoint_counts[state.id] = 1
        logger.debug("Checkpoint saved", execution_id=state.id,
                     type=CheckpointType.EXECUTION_STARTED.value, status=state.status.value)
        return data

    async def save(
        self,
        state: ExecutionState,
        checkpoint_type: CheckpointType,
        step_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Persist the current state. Raises PersistenceError if the store fails.

        Returns the record written (the partial update sent to the store).
        """
        async with self._lock(state.id):
            data = state.to_dict()
            partial = {k: v for k, v in data.items() if k not in _IMMUTABLE_FIELDS}
            try:
                await self.store.update_execution(state.id, partial)
            except Exception as e:
                logger.error("Failed to persist checkpoint", execution_id=state.id,
                             type=checkpoint_type.value, step_id=step_id, error=str(e))
                raise PersistenceError(f"Checkpoint write failed for execution {state.id}: {e}") from e

            self._checkpoint_counts[state.id] = self._checkpoint_counts.get(state.id, 0) + 1
            logger.debug(
                "Checkpoint saved",
                execution_id=state.id,
                type=checkpoint_type.value,
                step_id=step_id,
                status=state.status.value,
                checkpoints=self._checkpoint_counts[state.id],
            )
            return partial

    async def load(self, execution_id: str) -> Optional[ExecutionState]:
        """Rebuild an execution state from the store."""
        try:
            data = await self.store.get_execution(execution_id)
        except Exception as e:
            logger.error("Failed to load state", execution_id=execution_id, error=str(e))
            raise PersistenceError(f"Failed to load execution {execution_id}: {e}") from e
        if not data:
            return None
        return ExecutionState.from_dict(data)

    def checkpoint_count(self, execution_id: str) -> int:
        return self._checkpoint_counts.get(execution_id, 0)

    def cleanup(self, execution_id: str) -> None:
        """Drop per-execution bookkeeping once a run is over."""
        self._locks.pop(execution_id, None)
        self._checkpoint_counts.pop(execution_id, None)
