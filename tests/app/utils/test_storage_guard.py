"""Tests for storage_guard."""

import pytest
from sqlalchemy.exc import OperationalError

from app.exceptions.chat import Forbidden, StorageUnavailable
from app.utils.db.storage import storage_guard


class RecordingSession:
    def __init__(self):
        self.rolled_back = False

    def rollback(self):
        self.rolled_back = True


def test_database_errors_become_storage_unavailable():
    db = RecordingSession()
    with pytest.raises(StorageUnavailable) as exc:
        with storage_guard(db, "send_message"):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
    assert db.rolled_back is True
    assert exc.value.error_code == "STORAGE_UNAVAILABLE"
    assert exc.value.recoverable is True


def test_domain_errors_roll_back_and_propagate():
    db = RecordingSession()
    with pytest.raises(Forbidden):
        with storage_guard(db, "end_session"):
            raise Forbidden()
    assert db.rolled_back is True


def test_success_leaves_transaction_alone():
    db = RecordingSession()
    with storage_guard(db, "noop"):
        pass
    assert db.rolled_back is False
