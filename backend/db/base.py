"""Base model class for all SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for engine record tables."""

    pass


class TimestampMixin:
    """Adds row bookkeeping timestamps.

    These track when the row itself was written and are separate from the
    workflow/execution timestamps carried inside the stored document.
    """

    row_created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now()
    )
    row_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
