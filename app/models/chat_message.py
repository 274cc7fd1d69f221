"""ChatMessage model: one row per message in a chat session."""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.constants.chat import MessageStatus, MessageType
from app.db import Base
from app.models.mixins import SoftDeleteMixin, TimestampMixin
from app.utils.clock import utcnow


class ChatMessage(Base, TimestampMixin, SoftDeleteMixin):
    """
    Direction is 'inbound' (patient), 'outbound' (doctor) or 'system'.
    `message_id` is the client idempotency token, unique within a session.
    """

    __tablename__ = "chat_messages"

    __table_args__ = (
        UniqueConstraint("session_id", "message_id", name="uq_chat_messages_session_token"),
        Index("ix_chat_messages_session_id_sent_at", "session_id", "sent_at", "id"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(
        String(64),
        ForeignKey("chat_sessions.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_id = Column(Integer, nullable=False)  # 0 for system messages
    message_type = Column(String(16), nullable=False, default=MessageType.TEXT)
    direction = Column(String(16), nullable=False)
    content = Column(Text, nullable=False, default="")

    file_url = Column(String(1024), nullable=True)
    file_name = Column(String(255), nullable=True)
    file_type = Column(String(128), nullable=True)
    file_size = Column(Integer, nullable=True)

    status = Column(String(16), nullable=False, default=MessageStatus.PENDING)
    sent_at = Column(DateTime, nullable=False, default=utcnow)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    message_id = Column(String(128), nullable=False)
    reply_to_message_id = Column(String(36), nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)

    session = relationship("ChatSession", back_populates="messages")
