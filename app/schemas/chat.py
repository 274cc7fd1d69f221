"""Pydantic schemas for chat sessions, messages, filters and socket payloads.

Wire shapes use camelCase aliases (the web and mobile clients speak camelCase);
Python code uses the snake_case field names.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from app.constants.chat import (
    DEFAULT_MESSAGE_PAGE_LIMIT,
    DEFAULT_SESSION_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
    MessageDirection,
    MessageStatus,
    MessageType,
    SessionStatus,
    SessionType,
    SortOrder,
)
from app.utils.clock import as_naive_utc


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# -----------------------------------------------------------------------------
# Requests
# -----------------------------------------------------------------------------


class CreateSessionRequest(CamelModel):
    """Booking request; the patient is the authenticated caller."""

    doctor_id: int = Field(gt=0)
    session_type: SessionType = SessionType.CHAT
    notes: Optional[str] = Field(default=None, max_length=2000)


class SendMessageRequest(CamelModel):
    session_id: str = Field(min_length=1, max_length=64)
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    reply_to_message_id: Optional[str] = None
    idempotency_token: Optional[str] = Field(
        default=None,
        max_length=128,
        validation_alias="messageId",
    )
    file_url: Optional[str] = Field(default=None, max_length=1024)
    file_name: Optional[str] = Field(default=None, max_length=255)
    file_type: Optional[str] = Field(default=None, max_length=128)
    file_size: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_content(self) -> "SendMessageRequest":
        if self.message_type == MessageType.SYSTEM:
            raise ValueError("system messages cannot be sent by participants")
        if self.message_type == MessageType.TEXT and not self.content.strip():
            raise ValueError("content is required for text messages")
        if self.message_type != MessageType.TEXT and not self.file_url:
            raise ValueError("file_url is required for media messages")
        return self


class _DateRangeMixin(CamelModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)

    @model_validator(mode="after")
    def check_range(self):
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class GetMessagesQuery(_DateRangeMixin):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=DEFAULT_MESSAGE_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT)
    message_type: Optional[MessageType] = None
    status: Optional[MessageStatus] = None
    sort_by: Literal["sentAt", "createdAt"] = "sentAt"
    sort_order: SortOrder = SortOrder.ASC

    def to_filters(self) -> "MessageFilters":
        return MessageFilters(**self.model_dump())


class GetSessionsQuery(_DateRangeMixin):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=DEFAULT_SESSION_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT)
    status: Optional[SessionStatus] = None
    session_type: Optional[SessionType] = None
    sort_by: Literal["createdAt", "startedAt", "totalCost", "totalMessages"] = (
        "createdAt"
    )
    sort_order: SortOrder = SortOrder.DESC

    def to_filters(self) -> "SessionFilters":
        return SessionFilters(**self.model_dump())


class MessageFilters(GetMessagesQuery):
    """Validated message listing filters, as consumed by the message store."""

    include_deleted: bool = False


class SessionFilters(GetSessionsQuery):
    """Validated session listing filters, as consumed by the lifecycle manager."""


# -----------------------------------------------------------------------------
# Read models
# -----------------------------------------------------------------------------


class ChatSessionRead(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: str
    patient_id: int
    doctor_id: int
    session_type: SessionType
    status: SessionStatus
    total_cost: Decimal
    cost_per_unit: Decimal
    total_duration: int
    total_messages: int
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    patient_joined_at: Optional[datetime] = None
    doctor_joined_at: Optional[datetime] = None
    notes: Optional[str] = None
    is_paid: bool
    payment_transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    is_rated: bool
    rating: Optional[int] = None
    review: Optional[str] = None
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ChatMessageRead(CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: str
    session_id: str
    sender_id: int
    message_type: MessageType
    direction: MessageDirection
    content: str
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    status: MessageStatus
    sent_at: datetime
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    message_id: str
    reply_to_message_id: Optional[str] = None
    is_edited: bool
    is_deleted: bool
    created_at: datetime


class ChatHistory(CamelModel):
    """All sessions between one doctor and one patient, oldest first."""

    doctor_id: int
    patient_id: int
    sessions: list[ChatSessionRead] = []
    messages: dict[str, list[ChatMessageRead]] = {}


# -----------------------------------------------------------------------------
# Socket payloads
# -----------------------------------------------------------------------------


class SocketMessageData(CamelModel):
    session_id: str
    content: str = ""
    message_type: MessageType = MessageType.TEXT
    reply_to_message_id: Optional[str] = None
    message_id: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None

    def to_request(self) -> SendMessageRequest:
        return SendMessageRequest(
            session_id=self.session_id,
            content=self.content,
            message_type=self.message_type,
            reply_to_message_id=self.reply_to_message_id,
            idempotency_token=self.message_id,
            file_url=self.file_url,
            file_name=self.file_name,
            file_type=self.file_type,
            file_size=self.file_size,
        )


class SocketSessionData(CamelModel):
    session_id: str
    status: SessionStatus
    previous_status: Optional[SessionStatus] = None
    changed_by: Optional[int] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    total_duration: Optional[int] = None
    total_cost: Optional[Decimal] = None


class SocketUserData(CamelModel):
    user_id: int
    user_name: Optional[str] = None
    is_typing: Optional[bool] = None
    timestamp: Optional[datetime] = None


class SocketEvent(BaseModel):
    """Envelope for every frame written to or read from the push channel."""

    event: str
    data: Any = None


class SocketSessionRef(CamelModel):
    """Payload of join-session, leave-session, typing-start and typing-stop."""

    session_id: str = Field(min_length=1, max_length=64)


class SocketReadData(SocketSessionRef):
    message_ids: Optional[list[str]] = None


class SocketEndData(SocketSessionRef):
    reason: SessionStatus = SessionStatus.COMPLETED
