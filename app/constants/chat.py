"""Enumerations and fixed values for chat sessions and messages."""

from enum import StrEnum


class SessionStatus(StrEnum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SessionType(StrEnum):
    CHAT = "chat"
    AUDIO_CALL = "audio_call"
    VIDEO_CALL = "video_call"


class MessageType(StrEnum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    AUDIO = "audio"
    VIDEO = "video"
    SYSTEM = "system"


class MessageStatus(StrEnum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class MessageDirection(StrEnum):
    INBOUND = "inbound"  # patient -> doctor
    OUTBOUND = "outbound"  # doctor -> patient
    SYSTEM = "system"


class UserRole(StrEnum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class SortOrder(StrEnum):
    ASC = "ASC"
    DESC = "DESC"


TERMINAL_SESSION_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.CANCELLED, SessionStatus.EXPIRED}
)
OPEN_SESSION_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.ACTIVE})

# Allowed end reasons keyed by the status the session is leaving.
END_REASONS_BY_STATUS = {
    SessionStatus.PENDING: frozenset(
        {SessionStatus.CANCELLED, SessionStatus.EXPIRED}
    ),
    SessionStatus.ACTIVE: TERMINAL_SESSION_STATUSES,
}

# Forward order of delivery states; FAILED sits outside the progression.
MESSAGE_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

SYSTEM_SENDER_ID = 0

MAX_PAGE_LIMIT = 100
DEFAULT_MESSAGE_PAGE_LIMIT = 50
DEFAULT_SESSION_PAGE_LIMIT = 10
