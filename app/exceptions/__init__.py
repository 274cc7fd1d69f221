from app.exceptions.chat import (
    AlreadyDeleted,
    AlreadyPaid,
    ChatError,
    ChatValidationError,
    DuplicateActiveSession,
    Forbidden,
    InvalidParticipant,
    InvalidState,
    InvalidTransition,
    NotFound,
    RateLimited,
    SenderNotParticipant,
    SessionNotActive,
    StorageUnavailable,
)

__all__ = [
    "AlreadyDeleted",
    "AlreadyPaid",
    "ChatError",
    "ChatValidationError",
    "DuplicateActiveSession",
    "Forbidden",
    "InvalidParticipant",
    "InvalidState",
    "InvalidTransition",
    "NotFound",
    "RateLimited",
    "SenderNotParticipant",
    "SessionNotActive",
    "StorageUnavailable",
]
