"""
Base task interface for action implementations.

Every action a workflow step can invoke (log a message, call an HTTP API,
...) inherits from BaseTask and implements execute(). The task registry
runs tasks on behalf of the engine's action handler.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger(__name__)


class TaskResult:
    """Standardized result from task execution."""

    def __init__(
        self,
        success: bool,
        output: Any = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        duration_ms: float = 0,
    ):
        self.success = success
        self.output = output
        self.error = error
        self.metadata = metadata or {}
        self.duration_ms = duration_ms
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp.isoformat(),
        }


class BaseTask(ABC):
    """
    Abstract base class for all action implementations.

    Subclasses must implement:
    - execute(params, context) -> TaskResult
    - task_type (class property)
    - display_name (class property)
    """

    task_type: str = "base"
    display_name: str = "Base Task"
    description: str = "Abstract base task"

    @abstractmethod
    async def execute(
        self,
        params: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> TaskResult:
        """
        Execute the task.

        Args:
            params: Interpolated action parameters (from the workflow step)
            context: Invocation context (variables, results, ids, trigger data)

        Returns:
            TaskResult with output or error
        """

    async def run(
        self,
        params: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
    ) -> TaskResult:
        """
        Run the task with timing and error handling.

        This is the entry point called by the task registry.
        """
        start = time.monotonic()
        try:
            logger.info(
                "Task starting",
                task_type=self.task_type,
                task_name=self.display_name,
            )
            result = await self.execute(params, context or {})
            result.duration_ms = (time.monotonic() - start) * 1000

            logger.info(
                "Task completed",
                task_type=self.task_type,
                success=result.success,
                duration_ms=round(result.duration_ms, 2),
            )
            return result

        except Exception as e:
            duration_ms = (time.monotonic() - start) * 1000
            logger.error(
                "Task failed",
                task_type=self.task_type,
                error=str(e),
                duration_ms=round(duration_ms, 2),
            )
            return TaskResult(
                success=False,
                error=str(e),
                duration_ms=duration_ms,
            )


class FunctionTask(BaseTask):
    """Wraps an ``async def fn(params, context)`` as a task."""

    def __init__(self, task_type: str, fn, display_name: Optional[str] = None):
        self.task_type = task_type
        self.display_name = display_name or task_type
        self._fn = fn

    async def execute(self, params: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        output = await self._fn(params, context or {})
        return TaskResult(success=True, output=output)
