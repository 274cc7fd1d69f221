from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession
from app.models.doctor_service import DoctorService
from app.models.user import User

__all__ = [
    "ChatMessage",
    "ChatSession",
    "DoctorService",
    "User",
]
