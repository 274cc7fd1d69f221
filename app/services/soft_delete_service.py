"""Base service for models carrying SoftDeleteMixin."""

from __future__ import annotations

from typing import Generic, Type, TypeVar

from sqlalchemy.orm import Query, Session

from app.utils.clock import utcnow

ModelType = TypeVar("ModelType")


class SoftDeleteService(Generic[ModelType]):
    def __init__(self, db: Session, model: Type[ModelType]) -> None:
        self.db = db
        self.model = model

    def active_query(self) -> Query:
        """Query restricted to rows that have not been soft deleted."""
        return self.db.query(self.model).filter(self.model.is_active.is_(True))

    def soft_delete(self, record: ModelType) -> ModelType:
        record.is_active = False
        record.deleted_at = utcnow()
        return record

