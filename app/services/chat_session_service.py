"""Session lifecycle: booking, activation, termination, expiry, payment and rating."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from app.config import Settings, get_settings
from app.constants.chat import (
    END_REASONS_BY_STATUS,
    OPEN_SESSION_STATUSES,
    TERMINAL_SESSION_STATUSES,
    SessionStatus,
    SessionType,
    SortOrder,
)
from app.core.billing import (
    compute_total_cost,
    duration_seconds,
    offers_session_type,
    unit_price_for,
)
from app.core.expiry import ExpiryPolicy
from app.core.session_locks import SessionLockRegistry, session_locks
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
from app.models.chat_session import ChatSession, generate_session_id
from app.schemas.chat import SessionFilters
from app.services.soft_delete_service import SoftDeleteService
from app.services.user_service import UserService
from app.utils.clock import as_naive_utc, utcnow
from app.utils.db.filtering import apply_filters
from app.utils.db.storage import storage_guard

logger = logging.getLogger(__name__)

SESSION_SORT_COLUMNS = {
    "createdAt": ChatSession.created_at,
    "startedAt": ChatSession.started_at,
    "totalCost": ChatSession.total_cost,
    "totalMessages": ChatSession.total_messages,
}


class ChatSessionService(SoftDeleteService[ChatSession]):
    """
    Owns ChatSession records. Every mutation runs under the session's lock
    and re-reads the row with SELECT ... FOR UPDATE before checking state.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        locks: Optional[SessionLockRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(db, ChatSession)
        self.settings = settings or get_settings()
        self.locks = locks or session_locks
        self.clock = clock
        self.expiry = ExpiryPolicy.from_settings(self.settings)
        self._users = UserService(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return self.active_query().filter(ChatSession.id == session_id).first()

    def require_session(self, session_id: str) -> ChatSession:
        session = self.get_session(session_id)
        if session is None:
            raise NotFound("Session", session_id)
        return session

    def get_session_for_participant(self, session_id: str, user_id: int) -> ChatSession:
        session = self.require_session(session_id)
        if not session.has_participant(user_id):
            raise Forbidden(f"User {user_id} cannot access session {session_id}")
        return session

    def lock_session_row(self, session_id: str) -> ChatSession:
        """Fresh copy of the row, locked for the rest of the transaction."""
        session = (
            self.active_query()
            .filter(ChatSession.id == session_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if session is None:
            raise NotFound("Session", session_id)
        return session

    def find_open_session(self, user_id: int) -> Optional[ChatSession]:
        """Most recent pending or active session the user takes part in."""
        return self._open_sessions_query(user_id).first()

    def list_open_sessions(self, user_id: int) -> List[ChatSession]:
        return self._open_sessions_query(user_id).all()

    def _open_sessions_query(self, user_id: int) -> Query:
        return (
            self._participant_query(user_id)
            .filter(ChatSession.status.in_(list(OPEN_SESSION_STATUSES)))
            .order_by(ChatSession.created_at.desc(), ChatSession.id.asc())
        )

    def get_sessions_query(self, user_id: int, filters: SessionFilters) -> Query:
        """Filtered and ordered, not yet paginated."""
        query = apply_filters(
            self._participant_query(user_id),
            ChatSession,
            {
                "status": filters.status,
                "session_type": filters.session_type,
                "created_at": [
                    {"operator": ">=", "value": filters.start_date},
                    {"operator": "<=", "value": filters.end_date},
                ],
            },
        )
        column = SESSION_SORT_COLUMNS[filters.sort_by]
        ordering = column.desc() if filters.sort_order == SortOrder.DESC else column.asc()
        return query.order_by(ordering, ChatSession.id.asc())

    def list_sessions(self, user_id: int, filters: SessionFilters) -> List[ChatSession]:
        offset = (filters.page - 1) * filters.limit
        return (
            self.get_sessions_query(user_id, filters)
            .offset(offset)
            .limit(filters.limit)
            .all()
        )

    def count_sessions(self, user_id: int, filters: SessionFilters) -> int:
        return self.get_sessions_query(user_id, filters).order_by(None).count()

    def get_sessions_between(self, doctor_id: int, patient_id: int) -> List[ChatSession]:
        return (
            self.active_query()
            .filter(
                ChatSession.doctor_id == doctor_id,
                ChatSession.patient_id == patient_id,
            )
            .order_by(ChatSession.created_at.asc(), ChatSession.id.asc())
            .all()
        )

    def _participant_query(self, user_id: int) -> Query:
        return self.active_query().filter(
            or_(ChatSession.patient_id == user_id, ChatSession.doctor_id == user_id)
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        patient_id: int,
        doctor_id: int,
        session_type: SessionType | str = SessionType.CHAT,
        notes: Optional[str] = None,
    ) -> ChatSession:
        """Book a new pending session between an active patient and an approved doctor."""
        session_type = self._coerce_session_type(session_type)
        if patient_id == doctor_id:
            raise InvalidParticipant(patient_id, "cannot book a session with themselves")
        patient = self._users.get_active_user(patient_id)
        if patient is None:
            raise InvalidParticipant(patient_id)
        doctor = self._users.get_approved_doctor(doctor_id)
        if doctor is None:
            raise InvalidParticipant(doctor_id, "is not an active, approved doctor")
        pricing = self._users.get_doctor_pricing(doctor_id)
        if not offers_session_type(pricing, session_type):
            raise InvalidParticipant(
                doctor_id, f"does not offer {session_type} sessions"
            )

        pair_key = f"pair:{patient_id}:{doctor_id}:{session_type}"
        with self.locks.hold(pair_key), storage_guard(self.db, "create_session"):
            existing = (
                self.active_query()
                .filter(
                    ChatSession.patient_id == patient_id,
                    ChatSession.doctor_id == doctor_id,
                    ChatSession.session_type == session_type,
                    ChatSession.status.in_(list(OPEN_SESSION_STATUSES)),
                )
                .with_for_update()
                .first()
            )
            if existing is not None:
                raise DuplicateActiveSession(existing.id)

            now = self.clock()
            session = ChatSession(
                id=generate_session_id(doctor_id, patient_id),
                patient_id=patient_id,
                doctor_id=doctor_id,
                session_type=session_type,
                status=SessionStatus.PENDING,
                cost_per_unit=unit_price_for(pricing, session_type, self.settings),
                total_cost=compute_total_cost(session_type, 0, 0, 0),
                total_duration=0,
                total_messages=0,
                expires_at=self.expiry.on_create(now),
                notes=notes,
                is_paid=False,
                is_rated=False,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self.db.add(session)
            self.db.commit()
            self.db.refresh(session)
        logger.info(
            "Created %s session %s (patient=%s, doctor=%s)",
            session_type,
            session.id,
            patient_id,
            doctor_id,
        )
        return session

    def mark_participant_joined(
        self, session_id: str, user_id: int
    ) -> Tuple[ChatSession, bool]:
        """Stamp the participant's first join. Returns (session, first_join)."""
        with self.locks.hold(session_id), storage_guard(self.db, "mark_participant_joined"):
            session = self.lock_session_row(session_id)
            if not session.has_participant(user_id):
                raise Forbidden(f"User {user_id} is not a participant of {session_id}")
            if session.is_terminal:
                raise InvalidState(f"Session {session_id} has already ended")
            attr = (
                "patient_joined_at"
                if user_id == session.patient_id
                else "doctor_joined_at"
            )
            first_join = getattr(session, attr) is None
            if first_join:
                setattr(session, attr, self.clock())
                self.db.commit()
                self.db.refresh(session)
            else:
                self.db.commit()
        return session, first_join

    def activate_session(self, session_id: str, actor_id: int) -> ChatSession:
        """pending -> active; sets started_at and the active expiry window."""
        with self.locks.hold(session_id), storage_guard(self.db, "activate_session"):
            session = self.lock_session_row(session_id)
            if not session.has_participant(actor_id):
                raise Forbidden(f"User {actor_id} is not a participant of {session_id}")
            if session.status != SessionStatus.PENDING:
                raise InvalidTransition(session_id, session.status, SessionStatus.ACTIVE)
            now = self.clock()
            session.status = SessionStatus.ACTIVE
            session.started_at = now
            session.expires_at = self.expiry.on_activate(now)
            self.db.commit()
            self.db.refresh(session)
        logger.info("Session %s activated by %s", session_id, actor_id)
        return session

    def end_session(
        self,
        session_id: str,
        actor_id: Optional[int],
        reason: SessionStatus | str = SessionStatus.COMPLETED,
    ) -> ChatSession:
        """
        Move to a terminal status and finalize duration and cost.
        `actor_id=None` is used by system callers (expiry, admin tooling).
        """
        reason = self._coerce_end_reason(reason)
        with self.locks.hold(session_id), storage_guard(self.db, "end_session"):
            session = self.lock_session_row(session_id)
            if actor_id is not None and not session.has_participant(actor_id):
                raise Forbidden(f"User {actor_id} cannot end session {session_id}")
            if session.is_terminal:
                raise InvalidTransition(session_id, session.status, reason)
            if reason not in END_REASONS_BY_STATUS[SessionStatus(session.status)]:
                raise InvalidTransition(session_id, session.status, reason)
            self._finalize(session, reason, self.clock(), actor_id)
            self.db.commit()
            self.db.refresh(session)
        logger.info("Session %s ended as %s by %s", session_id, reason, actor_id)
        return session

    def expire_idle_sessions(self, now: Optional[datetime] = None) -> List[ChatSession]:
        """
        Expire every pending or active session whose expires_at <= now.
        Re-running with the same `now` finds nothing left to change.
        """
        now = as_naive_utc(now) or self.clock()
        due_ids = [
            row.id
            for row in self.active_query()
            .with_entities(ChatSession.id)
            .filter(
                ChatSession.status.in_(list(OPEN_SESSION_STATUSES)),
                ChatSession.expires_at.isnot(None),
                ChatSession.expires_at <= now,
            )
            .order_by(ChatSession.expires_at.asc(), ChatSession.id.asc())
            .all()
        ]
        # Release the read transaction before taking per-session locks.
        self.db.commit()

        expired: List[ChatSession] = []
        for session_id in due_ids:
            with self.locks.hold(session_id), storage_guard(self.db, "expire_idle_sessions"):
                session = self.lock_session_row(session_id)
                if (
                    session.is_terminal
                    or session.expires_at is None
                    or session.expires_at > now
                ):
                    # Ended or extended since the scan.
                    self.db.rollback()
                    continue
                self._finalize(session, SessionStatus.EXPIRED, now, None)
                self.db.commit()
                self.db.refresh(session)
                expired.append(session)
        if expired:
            logger.info("Expired %d idle sessions", len(expired))
        return expired

    def record_payment(self, session_id: str, transaction_id: str) -> ChatSession:
        if not transaction_id or not transaction_id.strip():
            raise ChatValidationError("transaction_id is required")
        with self.locks.hold(session_id), storage_guard(self.db, "record_payment"):
            session = self.lock_session_row(session_id)
            if session.is_paid:
                raise AlreadyPaid(session_id)
            session.is_paid = True
            session.payment_transaction_id = transaction_id.strip()
            session.paid_at = self.clock()
            self.db.commit()
            self.db.refresh(session)
        logger.info("Recorded payment %s for session %s", transaction_id, session_id)
        return session

    def rate_session(
        self,
        session_id: str,
        rating: int,
        review: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> ChatSession:
        """Rate once, after the session has ended. Only the patient may rate."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ChatValidationError("rating must be an integer between 1 and 5")
        with self.locks.hold(session_id), storage_guard(self.db, "rate_session"):
            session = self.lock_session_row(session_id)
            if actor_id is not None and actor_id != session.patient_id:
                raise Forbidden("Only the patient can rate a session")
            if not session.is_terminal:
                raise InvalidState(f"Session {session_id} has not ended yet")
            if session.is_rated:
                raise InvalidState(f"Session {session_id} has already been rated")
            session.is_rated = True
            session.rating = rating
            session.review = review
            self.db.commit()
            self.db.refresh(session)
        return session

    def archive_session(self, session_id: str) -> ChatSession:
        """Soft delete; only terminal sessions can be archived."""
        with self.locks.hold(session_id), storage_guard(self.db, "archive_session"):
            session = self.lock_session_row(session_id)
            if not session.is_terminal:
                raise InvalidState(f"Session {session_id} is still open")
            self.soft_delete(session)
            self.db.commit()
        return session

    def purge_session(self, session_id: str) -> bool:
        """Hard delete a session and, by cascade, all of its messages."""
        with self.locks.hold(session_id), storage_guard(self.db, "purge_session"):
            session = self.db.query(ChatSession).filter(ChatSession.id == session_id).first()
            if session is None:
                return False
            self.db.delete(session)
            self.db.commit()
        logger.info("Purged session %s", session_id)
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finalize(
        self,
        session: ChatSession,
        status: SessionStatus,
        now: datetime,
        actor_id: Optional[int],
    ) -> None:
        ended_at = max(now, session.started_at) if session.started_at else now
        session.status = status
        session.ended_at = ended_at
        session.ended_by_id = actor_id
        session.total_duration = duration_seconds(session.started_at, ended_at)
        session.total_cost = compute_total_cost(
            session.session_type,
            session.cost_per_unit,
            session.total_messages,
            session.total_duration,
        )

    @staticmethod
    def _coerce_session_type(value) -> SessionType:
        try:
            return SessionType(value)
        except ValueError as e:
            raise ChatValidationError(f"Unknown session type: {value}") from e

    @staticmethod
    def _coerce_end_reason(value) -> SessionStatus:
        try:
            reason = SessionStatus(value)
        except ValueError as e:
            raise ChatValidationError(f"Unknown end reason: {value}") from e
        if reason not in TERMINAL_SESSION_STATUSES:
            raise ChatValidationError(
                "reason must be one of completed, cancelled or expired"
            )
        return reason
