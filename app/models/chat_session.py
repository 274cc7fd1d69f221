"""ChatSession model: one booked consultation between a patient and a doctor."""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.constants.chat import (
    TERMINAL_SESSION_STATUSES,
    SessionStatus,
    SessionType,
)
from app.db import Base
from app.models.mixins import SoftDeleteMixin, TimestampMixin


def generate_session_id(doctor_id: int, patient_id: int) -> str:
    """Public session reference, also used as the realtime room name."""
    return f"session_{doctor_id}_{patient_id}_{uuid.uuid4().hex[:8]}"


class ChatSession(Base, TimestampMixin, SoftDeleteMixin):
    """
    Session record owned by the lifecycle manager. Status moves
    pending -> active -> completed|cancelled|expired, or straight from
    pending to cancelled|expired.
    """

    __tablename__ = "chat_sessions"

    __table_args__ = (
        Index("ix_chat_sessions_pair_type_status", "patient_id", "doctor_id", "session_type", "status"),
        Index("ix_chat_sessions_status_expires_at", "status", "expires_at"),
        CheckConstraint("rating IS NULL OR (rating >= 1 AND rating <= 5)", name="ck_chat_sessions_rating"),
        CheckConstraint("total_messages >= 0", name="ck_chat_sessions_total_messages"),
        CheckConstraint("total_duration >= 0", name="ck_chat_sessions_total_duration"),
    )

    id = Column(String(64), primary_key=True)
    patient_id = Column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    doctor_id = Column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    session_type = Column(String(16), nullable=False, default=SessionType.CHAT)
    status = Column(String(16), nullable=False, default=SessionStatus.PENDING)

    total_cost = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    cost_per_unit = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    total_duration = Column(Integer, nullable=False, default=0)  # seconds
    total_messages = Column(Integer, nullable=False, default=0)

    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    patient_joined_at = Column(DateTime, nullable=True)
    doctor_joined_at = Column(DateTime, nullable=True)
    ended_by_id = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    is_paid = Column(Boolean, nullable=False, default=False)
    payment_transaction_id = Column(String(128), nullable=True)
    paid_at = Column(DateTime, nullable=True)

    is_rated = Column(Boolean, nullable=False, default=False)
    rating = Column(Integer, nullable=True)
    review = Column(Text, nullable=True)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    messages = relationship(
        "ChatMessage",
        back_populates="session",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="[ChatMessage.sent_at, ChatMessage.id]",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def has_participant(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in (self.patient_id, self.doctor_id)

    def __repr__(self) -> str:
        return (
            f"ChatSession(id={self.id!r}, type={self.session_type}, "
            f"status={self.status}, patient={self.patient_id}, doctor={self.doctor_id})"
        )
