"""Tests for ChatSessionService."""

from datetime import timedelta
from decimal import Decimal

import pytest

from app.config import Settings
from app.constants.chat import SessionStatus, SessionType, SortOrder
from app.exceptions.chat import (
    AlreadyPaid,
    ChatValidationError,
    DuplicateActiveSession,
    Forbidden,
    InvalidParticipant,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from app.models.chat_session import ChatSession
from app.schemas.chat import GetSessionsQuery, SendMessageRequest
from app.services.chat_message_service import ChatMessageService
from app.services.chat_session_service import ChatSessionService
from app.utils.clock import utcnow


class FakeClock:
    def __init__(self, start=None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def test_create_session_starts_pending(session_service, setup_patient, setup_doctor):
    session = session_service.create_session(setup_patient.id, setup_doctor.id, "chat")

    assert session.status == SessionStatus.PENDING
    assert session.id.startswith(f"session_{setup_doctor.id}_{setup_patient.id}_")
    assert len(session.id.rsplit("_", 1)[-1]) == 8
    assert session.total_messages == 0
    assert session.total_cost == Decimal("0.00")
    assert session.started_at is None
    assert session.ended_at is None
    assert session.is_paid is False
    assert session.is_rated is False


def test_create_session_uses_default_price_without_pricing_row(
    session_service, setup_patient, setup_doctor, settings
):
    session = session_service.create_session(setup_patient.id, setup_doctor.id, "chat")
    assert session.cost_per_unit == settings.default_chat_price


def test_create_session_uses_doctor_pricing(
    session_service, setup_patient, setup_doctor, setup_pricing
):
    session = session_service.create_session(
        setup_patient.id, setup_doctor.id, SessionType.AUDIO_CALL
    )
    assert session.cost_per_unit == Decimal("0.10")


def test_create_session_rejects_disabled_session_type(
    session_service, setup_patient, setup_doctor, setup_pricing
):
    with pytest.raises(InvalidParticipant):
        session_service.create_session(
            setup_patient.id, setup_doctor.id, SessionType.VIDEO_CALL
        )


def test_create_session_sets_pending_expiry(db, setup_patient, setup_doctor, locks):
    clock = FakeClock()
    svc = ChatSessionService(
        db, settings=Settings(session_pending_ttl_minutes=30), locks=locks, clock=clock
    )
    session = svc.create_session(setup_patient.id, setup_doctor.id)
    assert session.expires_at == clock.now + timedelta(minutes=30)


def test_create_session_without_expiry_when_mode_off(
    db, setup_patient, setup_doctor, locks
):
    svc = ChatSessionService(db, settings=Settings(session_expiry_mode="off"), locks=locks)
    session = svc.create_session(setup_patient.id, setup_doctor.id)
    assert session.expires_at is None


def test_create_session_rejects_unknown_patient(session_service, setup_doctor):
    with pytest.raises(InvalidParticipant):
        session_service.create_session(99999, setup_doctor.id)


def test_create_session_rejects_inactive_patient(
    session_service, setup_inactive_patient, setup_doctor
):
    with pytest.raises(InvalidParticipant):
        session_service.create_session(setup_inactive_patient.id, setup_doctor.id)


def test_create_session_rejects_unapproved_doctor(
    session_service, setup_patient, setup_unapproved_doctor
):
    with pytest.raises(InvalidParticipant):
        session_service.create_session(setup_patient.id, setup_unapproved_doctor.id)


def test_create_session_rejects_patient_as_doctor(
    session_service, setup_patient, setup_other_patient
):
    with pytest.raises(InvalidParticipant):
        session_service.create_session(setup_patient.id, setup_other_patient.id)


def test_create_session_rejects_self_booking(session_service, setup_doctor):
    with pytest.raises(InvalidParticipant):
        session_service.create_session(setup_doctor.id, setup_doctor.id)


def test_create_session_rejects_unknown_type(session_service, setup_patient, setup_doctor):
    with pytest.raises(ChatValidationError):
        session_service.create_session(setup_patient.id, setup_doctor.id, "fax")


def test_create_session_rejects_duplicate_open_session(
    session_service, setup_pending_session, setup_patient, setup_doctor
):
    with pytest.raises(DuplicateActiveSession) as exc:
        session_service.create_session(setup_patient.id, setup_doctor.id, "chat")
    assert exc.value.existing_session_id == setup_pending_session.id


def test_create_session_allows_other_type_for_same_pair(
    session_service, setup_pending_session, setup_patient, setup_doctor
):
    session = session_service.create_session(
        setup_patient.id, setup_doctor.id, SessionType.AUDIO_CALL
    )
    assert session.id != setup_pending_session.id


def test_create_session_allowed_after_previous_ended(
    session_service, setup_pending_session, setup_patient, setup_doctor
):
    session_service.end_session(
        setup_pending_session.id, setup_patient.id, SessionStatus.CANCELLED
    )
    session = session_service.create_session(setup_patient.id, setup_doctor.id, "chat")
    assert session.status == SessionStatus.PENDING


def test_activate_session_sets_started_at(db, setup_patient, setup_doctor, locks):
    clock = FakeClock()
    svc = ChatSessionService(
        db, settings=Settings(session_active_ttl_minutes=60), locks=locks, clock=clock
    )
    session = svc.create_session(setup_patient.id, setup_doctor.id)
    clock.advance(minutes=2)

    session = svc.activate_session(session.id, setup_doctor.id)

    assert session.status == SessionStatus.ACTIVE
    assert session.started_at == clock.now
    assert session.expires_at == clock.now + timedelta(minutes=60)


def test_activate_session_twice_is_invalid_transition(
    session_service, setup_active_session, setup_patient
):
    with pytest.raises(InvalidTransition) as exc:
        session_service.activate_session(setup_active_session.id, setup_patient.id)
    assert exc.value.recoverable is True


def test_activate_session_by_stranger_is_forbidden(
    session_service, setup_pending_session, setup_other_patient
):
    with pytest.raises(Forbidden):
        session_service.activate_session(setup_pending_session.id, setup_other_patient.id)


def test_activate_unknown_session_is_not_found(session_service, setup_patient):
    with pytest.raises(NotFound):
        session_service.activate_session("session_missing", setup_patient.id)


def test_end_pending_session_as_cancelled(
    session_service, setup_pending_session, setup_patient
):
    session = session_service.end_session(
        setup_pending_session.id, setup_patient.id, SessionStatus.CANCELLED
    )
    assert session.status == SessionStatus.CANCELLED
    assert session.ended_at is not None
    assert session.total_duration == 0
    assert session.total_cost == Decimal("0.00")
    assert session.ended_by_id == setup_patient.id


def test_end_pending_session_as_completed_is_rejected(
    session_service, setup_pending_session, setup_patient
):
    with pytest.raises(InvalidTransition):
        session_service.end_session(
            setup_pending_session.id, setup_patient.id, SessionStatus.COMPLETED
        )


def test_end_session_rejects_non_terminal_reason(
    session_service, setup_active_session, setup_patient
):
    with pytest.raises(ChatValidationError):
        session_service.end_session(
            setup_active_session.id, setup_patient.id, SessionStatus.ACTIVE
        )


def test_end_session_by_stranger_is_forbidden(
    session_service, setup_active_session, setup_other_patient
):
    with pytest.raises(Forbidden):
        session_service.end_session(setup_active_session.id, setup_other_patient.id)


def test_terminal_session_rejects_every_transition(
    session_service, setup_active_session, setup_patient
):
    session_service.end_session(setup_active_session.id, setup_patient.id)

    for reason in (
        SessionStatus.COMPLETED,
        SessionStatus.CANCELLED,
        SessionStatus.EXPIRED,
    ):
        with pytest.raises(InvalidTransition):
            session_service.end_session(setup_active_session.id, setup_patient.id, reason)
    with pytest.raises(InvalidTransition):
        session_service.activate_session(setup_active_session.id, setup_patient.id)

    session = session_service.get_session(setup_active_session.id)
    assert session.status == SessionStatus.COMPLETED


def test_end_audio_call_bills_per_second(
    db, setup_patient, setup_doctor, setup_pricing, locks, settings
):
    clock = FakeClock()
    svc = ChatSessionService(db, settings=settings, locks=locks, clock=clock)
    session = svc.create_session(setup_patient.id, setup_doctor.id, SessionType.AUDIO_CALL)
    svc.activate_session(session.id, setup_doctor.id)
    clock.advance(minutes=5)

    session = svc.end_session(session.id, setup_doctor.id)

    assert session.total_duration == 300
    assert session.total_cost == Decimal("30.00")


def test_chat_session_scenario(
    db, setup_patient, setup_doctor, setup_pricing, locks, settings
):
    sessions = ChatSessionService(db, settings=settings, locks=locks)
    messages = ChatMessageService(db, settings=settings, locks=locks)

    session = sessions.create_session(setup_patient.id, setup_doctor.id, "chat")
    assert session.status == SessionStatus.PENDING
    session = sessions.activate_session(session.id, setup_patient.id)
    assert session.status == SessionStatus.ACTIVE
    assert session.started_at is not None

    for i in range(3):
        message = messages.send_message(
            setup_patient.id,
            SendMessageRequest(session_id=session.id, content=f"message {i}"),
        )
        assert message.status == "pending"
        assert messages.mark_status(message.id, "sent").status == "sent"

    session = sessions.get_session(session.id)
    assert session.total_messages == 3

    session = sessions.end_session(session.id, setup_doctor.id, SessionStatus.COMPLETED)
    assert session.status == SessionStatus.COMPLETED
    assert session.ended_at is not None
    assert session.total_cost == Decimal("7.50")


def test_expire_idle_sessions_expires_past_due(db, setup_patient, setup_doctor, locks):
    clock = FakeClock()
    svc = ChatSessionService(
        db, settings=Settings(session_pending_ttl_minutes=30), locks=locks, clock=clock
    )
    session = svc.create_session(setup_patient.id, setup_doctor.id)

    assert svc.expire_idle_sessions(clock.now + timedelta(minutes=29)) == []

    now = clock.now + timedelta(minutes=31)
    expired = svc.expire_idle_sessions(now)

    assert [s.id for s in expired] == [session.id]
    assert expired[0].status == SessionStatus.EXPIRED
    assert expired[0].ended_at == now
    assert expired[0].ended_by_id is None


def test_expire_idle_sessions_is_idempotent(db, setup_patient, setup_doctor, locks):
    clock = FakeClock()
    svc = ChatSessionService(db, settings=Settings(), locks=locks, clock=clock)
    session = svc.create_session(setup_patient.id, setup_doctor.id)
    svc.activate_session(session.id, setup_patient.id)
    now = clock.now + timedelta(hours=2)

    first = svc.expire_idle_sessions(now)
    snapshot = svc.get_session(session.id)
    state = (snapshot.status, snapshot.ended_at, snapshot.total_duration, snapshot.total_cost)

    second = svc.expire_idle_sessions(now)
    again = svc.get_session(session.id)

    assert len(first) == 1
    assert second == []
    assert (again.status, again.ended_at, again.total_duration, again.total_cost) == state


def test_expire_idle_sessions_skips_ended_sessions(
    db, setup_patient, setup_doctor, locks
):
    clock = FakeClock()
    svc = ChatSessionService(db, settings=Settings(), locks=locks, clock=clock)
    session = svc.create_session(setup_patient.id, setup_doctor.id)
    svc.end_session(session.id, setup_patient.id, SessionStatus.CANCELLED)

    assert svc.expire_idle_sessions(clock.now + timedelta(days=1)) == []
    assert svc.get_session(session.id).status == SessionStatus.CANCELLED


def test_expire_idle_sessions_accepts_aware_now(db, setup_patient, setup_doctor, locks):
    from datetime import timezone

    clock = FakeClock()
    svc = ChatSessionService(db, settings=Settings(), locks=locks, clock=clock)
    svc.create_session(setup_patient.id, setup_doctor.id)
    aware = (clock.now + timedelta(hours=1)).replace(tzinfo=timezone.utc)

    assert len(svc.expire_idle_sessions(aware)) == 1


def test_record_payment(session_service, setup_active_session):
    session = session_service.record_payment(setup_active_session.id, "txn_123")
    assert session.is_paid is True
    assert session.payment_transaction_id == "txn_123"
    assert session.paid_at is not None


def test_record_payment_twice_raises_already_paid(session_service, setup_active_session):
    session_service.record_payment(setup_active_session.id, "txn_123")
    with pytest.raises(AlreadyPaid) as exc:
        session_service.record_payment(setup_active_session.id, "txn_456")
    assert exc.value.recoverable is True
    assert session_service.get_session(setup_active_session.id).payment_transaction_id == "txn_123"


def test_record_payment_requires_transaction_id(session_service, setup_active_session):
    with pytest.raises(ChatValidationError):
        session_service.record_payment(setup_active_session.id, "  ")


def test_rate_non_terminal_session_is_invalid_state(
    session_service, setup_active_session, setup_patient
):
    with pytest.raises(InvalidState):
        session_service.rate_session(setup_active_session.id, 5, actor_id=setup_patient.id)


def test_rate_session_twice_is_invalid_state(
    session_service, setup_active_session, setup_patient
):
    session_service.end_session(setup_active_session.id, setup_patient.id)

    session = session_service.rate_session(
        setup_active_session.id, 4, "Very helpful", actor_id=setup_patient.id
    )
    assert session.is_rated is True
    assert session.rating == 4
    assert session.review == "Very helpful"

    with pytest.raises(InvalidState):
        session_service.rate_session(setup_active_session.id, 5, actor_id=setup_patient.id)


def test_rate_session_by_doctor_is_forbidden(
    session_service, setup_active_session, setup_patient, setup_doctor
):
    session_service.end_session(setup_active_session.id, setup_patient.id)
    with pytest.raises(Forbidden):
        session_service.rate_session(setup_active_session.id, 5, actor_id=setup_doctor.id)


@pytest.mark.parametrize("rating", [0, 6, True])
def test_rate_session_rejects_out_of_range(
    session_service, setup_active_session, setup_patient, rating
):
    session_service.end_session(setup_active_session.id, setup_patient.id)
    with pytest.raises(ChatValidationError):
        session_service.rate_session(setup_active_session.id, rating)


def test_get_session_for_participant(
    session_service, setup_pending_session, setup_doctor, setup_other_patient
):
    session = session_service.get_session_for_participant(
        setup_pending_session.id, setup_doctor.id
    )
    assert session.id == setup_pending_session.id

    with pytest.raises(Forbidden):
        session_service.get_session_for_participant(
            setup_pending_session.id, setup_other_patient.id
        )


def test_find_open_session(
    session_service, setup_pending_session, setup_patient, setup_other_patient
):
    assert session_service.find_open_session(setup_patient.id).id == setup_pending_session.id
    assert session_service.find_open_session(setup_other_patient.id) is None

    session_service.end_session(
        setup_pending_session.id, setup_patient.id, SessionStatus.CANCELLED
    )
    assert session_service.find_open_session(setup_patient.id) is None


def test_list_open_sessions(
    session_service, setup_pending_session, setup_patient, setup_doctor, setup_other_patient
):
    assert [s.id for s in session_service.list_open_sessions(setup_doctor.id)] == [
        setup_pending_session.id
    ]
    assert session_service.list_open_sessions(setup_other_patient.id) == []

    session_service.end_session(
        setup_pending_session.id, setup_patient.id, SessionStatus.CANCELLED
    )
    assert session_service.list_open_sessions(setup_patient.id) == []


def test_mark_participant_joined_reports_first_join(
    session_service, setup_pending_session, setup_patient
):
    session, first = session_service.mark_participant_joined(
        setup_pending_session.id, setup_patient.id
    )
    assert first is True
    assert session.patient_joined_at is not None
    assert session.doctor_joined_at is None

    _, again = session_service.mark_participant_joined(
        setup_pending_session.id, setup_patient.id
    )
    assert again is False


def test_list_sessions_filters_and_sorts(
    db, setup_patient, setup_doctor, setup_pricing, settings, locks
):
    clock = FakeClock()
    session_service = ChatSessionService(db, settings=settings, locks=locks, clock=clock)
    chat = session_service.create_session(setup_patient.id, setup_doctor.id, "chat")
    clock.advance(seconds=1)
    audio = session_service.create_session(
        setup_patient.id, setup_doctor.id, SessionType.AUDIO_CALL
    )
    session_service.end_session(chat.id, setup_patient.id, SessionStatus.CANCELLED)

    everything = session_service.list_sessions(
        setup_patient.id, GetSessionsQuery(sortBy="createdAt", sortOrder="ASC").to_filters()
    )
    assert [s.id for s in everything] == [chat.id, audio.id]

    pending = session_service.list_sessions(
        setup_doctor.id, GetSessionsQuery(status="pending").to_filters()
    )
    assert [s.id for s in pending] == [audio.id]

    audio_only = session_service.list_sessions(
        setup_patient.id, GetSessionsQuery(sessionType="audio_call").to_filters()
    )
    assert [s.id for s in audio_only] == [audio.id]

    page = GetSessionsQuery(page=2, limit=1, sortOrder=SortOrder.ASC).to_filters()
    assert [s.id for s in session_service.list_sessions(setup_patient.id, page)] == [audio.id]
    assert session_service.count_sessions(setup_patient.id, page) == 2


def test_list_sessions_only_returns_participant_sessions(
    session_service, setup_pending_session, setup_other_patient
):
    filters = GetSessionsQuery().to_filters()
    assert session_service.list_sessions(setup_other_patient.id, filters) == []


def test_archive_session_requires_terminal(
    session_service, setup_active_session, setup_patient
):
    with pytest.raises(InvalidState):
        session_service.archive_session(setup_active_session.id)

    session_service.end_session(setup_active_session.id, setup_patient.id)
    session_service.archive_session(setup_active_session.id)

    assert session_service.get_session(setup_active_session.id) is None


def test_purge_session_removes_messages(
    db, session_service, message_service, setup_active_session, setup_patient
):
    message_service.send_message(
        setup_patient.id,
        SendMessageRequest(session_id=setup_active_session.id, content="hello"),
    )

    assert session_service.purge_session(setup_active_session.id) is True
    db.expire_all()
    assert db.query(ChatSession).filter_by(id=setup_active_session.id).first() is None
    assert message_service.get_latest_message(setup_active_session.id) is None
    assert session_service.purge_session(setup_active_session.id) is False
