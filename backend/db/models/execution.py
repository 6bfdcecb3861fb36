"""Execution record table."""

from typing import Optional

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ExecutionStatus
from db.base import Base, TimestampMixin


class ExecutionRecord(TimestampMixin, Base):
    """Persisted execution state.

    ``status`` and ``workflow_id`` are lifted out of the document so runs
    can be filtered without decoding JSON. ``state`` holds the full
    ``ExecutionState.to_dict()`` snapshot and is merged on every update.
    """

    __tablename__ = "workflow_executions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(default=ExecutionStatus.PENDING.value, index=True)
    error: Mapped[Optional[str]] = mapped_column(nullable=True)
    state: Mapped[dict] = mapped_column(JSON, nullable=False)
