"""Errors raised by the session lifecycle, message store and gateway.

Every error carries a stable ``error_code`` plus a human-readable message so
the transport layer can report failures without inspecting exception types.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base exception for all chat engine errors."""

    error_code = "CHAT_ERROR"
    recoverable = False

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code

    def to_payload(self) -> Dict[str, Any]:
        """Serializable form used for `error` socket events."""
        return {"code": self.error_code, "message": self.message}


class NotFound(ChatError):
    """Raised when a session, message or user does not exist."""

    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        super().__init__(f"{resource} {identifier} not found")
        self.resource = resource
        self.identifier = identifier


class InvalidParticipant(ChatError):
    """Raised when a patient or doctor does not resolve to an active user."""

    error_code = "INVALID_PARTICIPANT"

    def __init__(self, user_id: int, reason: str = "is not an active user"):
        super().__init__(f"User {user_id} {reason}")
        self.user_id = user_id


class DuplicateActiveSession(ChatError):
    """Raised when the pair already has an open session of the same type."""

    error_code = "DUPLICATE_ACTIVE_SESSION"

    def __init__(self, existing_session_id: str):
        super().__init__(
            f"An open session already exists for this pair: {existing_session_id}"
        )
        self.existing_session_id = existing_session_id


class InvalidTransition(ChatError):
    """Raised when a lifecycle transition is not allowed from the current status."""

    error_code = "INVALID_TRANSITION"
    recoverable = True

    def __init__(self, session_id: str, current: str, target: str):
        super().__init__(f"Session {session_id} cannot move from {current} to {target}")
        self.session_id = session_id
        self.current = current
        self.target = target


class Forbidden(ChatError):
    """Raised when an actor is not allowed to act on a session or message."""

    error_code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


class SessionNotActive(ChatError):
    """Raised when sending into a session that is not active."""

    error_code = "SESSION_NOT_ACTIVE"

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is not active (status: {status})")
        self.session_id = session_id
        self.status = status


class SenderNotParticipant(ChatError):
    """Raised when the sender is neither the patient nor the doctor."""

    error_code = "SENDER_NOT_PARTICIPANT"

    def __init__(self, session_id: str, sender_id: int):
        super().__init__(f"User {sender_id} is not a participant of {session_id}")
        self.session_id = session_id
        self.sender_id = sender_id


class AlreadyPaid(ChatError):
    error_code = "ALREADY_PAID"
    recoverable = True

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already paid")
        self.session_id = session_id


class InvalidState(ChatError):
    """Raised when an operation does not fit the session's current state."""

    error_code = "INVALID_STATE"


class AlreadyDeleted(ChatError):
    error_code = "ALREADY_DELETED"

    def __init__(self, message_id: str):
        super().__init__(f"Message {message_id} has been deleted")
        self.message_id = message_id


class ChatValidationError(ChatError):
    """Raised for malformed input that slipped past schema validation."""

    error_code = "VALIDATION_ERROR"


class RateLimited(ChatError):
    error_code = "RATE_LIMITED"
    recoverable = True

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} is sending messages too fast")
        self.user_id = user_id


class StorageUnavailable(ChatError):
    """Raised when the persistence layer fails; callers retry with backoff."""

    error_code = "STORAGE_UNAVAILABLE"
    recoverable = True

    def __init__(self, operation: str):
        super().__init__(f"Storage unavailable during {operation}")
        self.operation = operation
