"""Column mixins shared by the chat models."""

from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime

from app.utils.clock import utcnow


class TimestampMixin:
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SoftDeleteMixin:
    """Rows are retained for audit; `is_active = False` hides them."""

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)
