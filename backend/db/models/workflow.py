"""Workflow record table."""

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import WorkflowStatus
from db.base import Base, TimestampMixin


class WorkflowRecord(TimestampMixin, Base):
    """Stored workflow definition.

    Attributes:
        id: Workflow id
        name: Workflow name (indexed for lookups)
        status: Workflow lifecycle status
        definition: Full workflow document as produced by ``Workflow.to_record``
    """

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(nullable=False, index=True)
    status: Mapped[str] = mapped_column(default=WorkflowStatus.DRAFT.value, index=True)
    definition: Mapped[dict] = mapped_column(JSON, nullable=False)
