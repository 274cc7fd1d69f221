"""Fixtures for chat sessions and the services that own them."""

import pytest

from app.services.chat_message_service import ChatMessageService
from app.services.chat_session_service import ChatSessionService


@pytest.fixture(scope="function")
def session_service(db, settings, locks):
    return ChatSessionService(db, settings=settings, locks=locks)


@pytest.fixture(scope="function")
def message_service(db, settings, locks):
    return ChatMessageService(db, settings=settings, locks=locks)


@pytest.fixture(scope="function")
def setup_pending_session(session_service, setup_patient, setup_doctor):
    return session_service.create_session(setup_patient.id, setup_doctor.id, "chat")


@pytest.fixture(scope="function")
def setup_active_session(session_service, setup_pending_session, setup_patient):
    return session_service.activate_session(setup_pending_session.id, setup_patient.id)
