from __future__ import annotations

from typing import Any

from pydantic_core import to_jsonable_python

from app.schemas.chat import SocketEvent

# Server -> client
SESSION_JOINED = "session-joined"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
NEW_MESSAGE = "new-message"
SESSION_UPDATED = "session-updated"
USER_TYPING = "user-typing"
MESSAGES_READ = "messages-read"
ERROR = "error"

# Client -> server
JOIN_SESSION = "join-session"
LEAVE_SESSION = "leave-session"
SEND_MESSAGE = "send-message"
TYPING_START = "typing-start"
TYPING_STOP = "typing-stop"
MARK_READ = "mark-read"
END_SESSION = "end-session"

CLIENT_EVENTS = frozenset(
    {
        JOIN_SESSION,
        LEAVE_SESSION,
        SEND_MESSAGE,
        TYPING_START,
        TYPING_STOP,
        MARK_READ,
        END_SESSION,
    }
)


def build_event(event: str, data: Any = None) -> dict[str, Any]:
    """JSON-ready `{"event", "data"}` frame with camelCase payload keys."""
    frame = SocketEvent(event=event, data=to_jsonable_python(data, by_alias=True))
    return frame.model_dump(mode="json")
