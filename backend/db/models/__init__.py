"""Database models for the workflow engine.

This module imports all models to ensure they are registered
with SQLAlchemy's declarative base.
"""

from db.models.workflow import WorkflowRecord
from db.models.execution import ExecutionRecord

__all__ = [
    "WorkflowRecord",
    "ExecutionRecord",
]
