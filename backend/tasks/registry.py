"""
Task Registry: maps action ids to task implementations.

The registry is the engine's action invoker: ``invoke(action_id, context)``
runs the registered task with the step's interpolated parameters and either
returns the task output or raises ActionFailedError.
"""

from typing import Any, Awaitable, Callable, Dict, Optional, Union

from core.exceptions import ActionFailedError
from tasks.base_task import BaseTask, FunctionTask
from tasks.implementations.http_task import HTTP_TASK_TYPES
from tasks.implementations.log_task import LOG_TASK_TYPES

TaskFactory = Callable[[], BaseTask]


class TaskRegistry:
    """Registry of action implementations."""

    def __init__(self, register_builtins: bool = True):
        self._tasks: Dict[str, TaskFactory] = {}
        if register_builtins:
            self._register_builtin_tasks()

    def _register_builtin_tasks(self):
        """Register all built-in task types."""
        for task_type, task_class in LOG_TASK_TYPES.items():
            self.register(task_type, task_class)

        for task_type, task_class in HTTP_TASK_TYPES.items():
            self.register(task_type, task_class)

    def register(self, task_type: str, task: Union[type, BaseTask]) -> None:
        """Register a task class (instantiated per call) or a ready instance."""
        if isinstance(task, BaseTask):
            self._tasks[task_type] = lambda: task
        else:
            self._tasks[task_type] = task

    def register_function(
        self,
        task_type: str,
        fn: Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Any]],
    ) -> None:
        """Register a plain ``async def fn(params, context)`` as an action."""
        self.register(task_type, FunctionTask(task_type, fn))

    def create_instance(self, task_type: str) -> Optional[BaseTask]:
        """Create a new instance of a task by type."""
        factory = self._tasks.get(task_type)
        return factory() if factory else None

    @property
    def available_types(self) -> list:
        return list(self._tasks.keys())

    async def invoke(self, action_id: str, context: Dict[str, Any]) -> Any:
        """Run an action and return its output.

        Raises:
            ActionFailedError: unknown action id or the task reported failure
        """
        task = self.create_instance(action_id)
        if task is None:
            raise ActionFailedError(action_id, f"Unknown action: {action_id}")

        result = await task.run(context.get("parameters") or {}, context)
        if not result.success:
            raise ActionFailedError(action_id, result.error or f"Action '{action_id}' returned success=False")
        return result.output
