"""Log task: writes a message to the engine log."""

from typing import Any, Dict, Optional

import structlog

from tasks.base_task import BaseTask, TaskResult

logger = structlog.get_logger(__name__)

_LEVELS = ("debug", "info", "warning", "error")


class LogTask(BaseTask):
    """Log a message (useful for debugging workflows).

    Params:
        message: Text to log
        level: debug | info | warning | error (default: info)
    """

    task_type = "log"
    display_name = "Log Message"
    description = "Write a message to the workflow log"

    async def execute(self, params: Dict[str, Any], context: Optional[Dict[str, Any]] = None) -> TaskResult:
        message = str(params.get("message", ""))
        level = params.get("level", "info")
        if level not in _LEVELS:
            return TaskResult(success=False, error=f"Unknown log level: {level}")

        context = context or {}
        getattr(logger, level)(
            message,
            workflow_id=context.get("workflow_id"),
            execution_id=context.get("execution_id"),
            step_id=context.get("step_id"),
        )
        return TaskResult(success=True, output={"message": message, "level": level})


LOG_TASK_TYPES = {
    "log": LogTask,
}
