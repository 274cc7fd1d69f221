"""Unit-of-work guard that turns persistence failures into StorageUnavailable."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.exceptions.chat import StorageUnavailable

logger = logging.getLogger(__name__)


@contextmanager
def storage_guard(db: Session, operation: str) -> Iterator[Session]:
    """
    Run a unit of work. Any failure rolls the transaction back (releasing row
    locks); SQLAlchemy errors are re-raised as StorageUnavailable so callers
    can retry with backoff, domain errors propagate unchanged.
    """
    try:
        yield db
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Storage failure during %s: %s", operation, e)
        raise StorageUnavailable(operation) from e
    except Exception:
        db.rollback()
        raise
