from app.services.chat_message_service import ChatMessageService, MessageListing
from app.services.chat_session_manager import ChatSessionManager
from app.services.chat_session_service import ChatSessionService
from app.services.user_service import UserService

__all__ = [
    "ChatMessageService",
    "ChatSessionManager",
    "ChatSessionService",
    "MessageListing",
    "UserService",
]
