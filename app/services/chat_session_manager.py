"""
ChatSessionManager ties the lifecycle manager, the message store and the
realtime gateway together for the socket layer and the expiry sweeper.

Service calls are synchronous SQLAlchemy work and run in the threadpool so
the event loop keeps serving other sessions.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.channels.gateway import RealtimeGateway
from app.config import Settings, get_settings
from app.constants.chat import MessageStatus, SessionStatus
from app.core.session_locks import SessionLockRegistry
from app.exceptions.chat import Forbidden, InvalidTransition
from app.models.chat_session import ChatSession
from app.schemas.chat import (
    ChatHistory,
    ChatMessageRead,
    ChatSessionRead,
    CreateSessionRequest,
    MessageFilters,
    SendMessageRequest,
    SocketSessionData,
)
from app.services.chat_message_service import ChatMessageService
from app.services.chat_session_service import ChatSessionService
from app.services.user_service import UserService
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)

SESSION_CREATED_NOTICE = "Chat session created. Waiting for participants to join..."
SESSION_STARTED_NOTICE = "Session started"
SESSION_ENDED_NOTICES = {
    SessionStatus.COMPLETED: "Session ended",
    SessionStatus.CANCELLED: "Session cancelled",
    SessionStatus.EXPIRED: "Session expired",
}


class ChatSessionManager:
    def __init__(
        self,
        db: Session,
        gateway: RealtimeGateway,
        settings: Optional[Settings] = None,
        locks: Optional[SessionLockRegistry] = None,
        rate_limit_client=None,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.sessions = ChatSessionService(db, self.settings, locks)
        self.messages = ChatMessageService(
            db, self.settings, locks, rate_limit_client=rate_limit_client
        )
        self.users = UserService(db)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self, patient_id: int, request: CreateSessionRequest
    ) -> ChatSessionRead:
        session = await run_in_threadpool(
            self.sessions.create_session,
            patient_id,
            request.doctor_id,
            request.session_type,
            request.notes,
        )
        await run_in_threadpool(
            self.messages.send_system_message, session.id, SESSION_CREATED_NOTICE
        )
        return ChatSessionRead.model_validate(session)

    async def join_session(self, session_id: str, user_id: int) -> ChatSessionRead:
        """
        Admit the user to the room. The first join of a pending session
        activates it; a participant's first join posts a system notice.
        """
        session = await run_in_threadpool(
            self.sessions.get_session_for_participant, session_id, user_id
        )
        user_name = await run_in_threadpool(self.users.get_display_name, user_id)
        await self.gateway.join(
            session_id,
            user_id,
            session=ChatSessionRead.model_validate(session),
            user_name=user_name,
        )
        try:
            session, first_join = await run_in_threadpool(
                self.sessions.mark_participant_joined, session_id, user_id
            )
        except Exception:
            await self.gateway.leave(session_id, user_id)
            raise

        if first_join:
            notice = f"{user_name or f'User {user_id}'} joined the session"
            await self._post_system_message(session_id, notice)

        if session.status == SessionStatus.PENDING:
            session = await self._activate(session_id, user_id)
        return ChatSessionRead.model_validate(session)

    async def subscribe_open_sessions(self, user_id: int) -> List[str]:
        """
        Put a freshly connected user back into the rooms of their pending and
        active sessions. No activation and no join notices.
        """
        sessions = await run_in_threadpool(self.sessions.list_open_sessions, user_id)
        for session in sessions:
            await self.gateway.subscribe(session.id, user_id)
        return [session.id for session in sessions]

    async def leave_session(self, session_id: str, user_id: int) -> bool:
        return await self.gateway.leave(session_id, user_id)

    async def end_session(
        self,
        session_id: str,
        actor_id: Optional[int],
        reason: SessionStatus | str = SessionStatus.COMPLETED,
    ) -> ChatSessionRead:
        before = await run_in_threadpool(self.sessions.require_session, session_id)
        previous_status = SessionStatus(before.status)
        session = await run_in_threadpool(
            self.sessions.end_session, session_id, actor_id, reason
        )
        await self._announce_end(session, previous_status)
        return ChatSessionRead.model_validate(session)

    async def expire_idle_sessions(self, now=None) -> List[ChatSessionRead]:
        """Run one expiry sweep and push the resulting updates."""
        now = now or utcnow()
        expired = await run_in_threadpool(self.sessions.expire_idle_sessions, now)
        results = []
        for session in expired:
            # Expiry leaves no trace of the prior status; a session that
            # never started was still pending.
            previous = (
                SessionStatus.ACTIVE if session.started_at else SessionStatus.PENDING
            )
            await self._announce_end(session, previous)
            results.append(ChatSessionRead.model_validate(session))
        return results

    async def list_sessions(self, user_id: int, filters) -> List[ChatSessionRead]:
        sessions = await run_in_threadpool(self.sessions.list_sessions, user_id, filters)
        return [ChatSessionRead.model_validate(s) for s in sessions]

    async def get_chat_history(
        self, doctor_id: int, patient_id: int, actor_id: int
    ) -> ChatHistory:
        """Every session between the pair with its visible messages, oldest first."""
        if actor_id not in (doctor_id, patient_id):
            raise Forbidden("Only the doctor or the patient can read this history")
        return await run_in_threadpool(self._load_history, doctor_id, patient_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def send_message(
        self, sender_id: int, request: SendMessageRequest
    ) -> ChatMessageRead:
        """
        Store, mark sent, push to the room, and mark delivered once the other
        participant was reached. A replayed token returns the stored message
        without another push.
        """
        message, created = await run_in_threadpool(
            self.messages.submit_message, sender_id, request
        )
        if not created:
            return ChatMessageRead.model_validate(message)

        message = await run_in_threadpool(
            self.messages.mark_status, message.id, MessageStatus.SENT
        )
        reached = await self.gateway.broadcast_message(
            request.session_id, ChatMessageRead.model_validate(message)
        )
        if reached - {sender_id}:
            message = await run_in_threadpool(
                self.messages.mark_status, message.id, MessageStatus.DELIVERED
            )
        return ChatMessageRead.model_validate(message)

    async def list_messages(
        self, session_id: str, user_id: int, filters: Optional[MessageFilters] = None
    ) -> List[ChatMessageRead]:
        await run_in_threadpool(
            self.sessions.get_session_for_participant, session_id, user_id
        )

        def _load():
            listing = self.messages.list_messages(session_id, filters)
            return [ChatMessageRead.model_validate(m) for m in listing]

        return await run_in_threadpool(_load)

    async def mark_read(
        self,
        session_id: str,
        reader_id: int,
        message_ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        updated = await run_in_threadpool(
            self.messages.mark_messages_read, session_id, reader_id, message_ids
        )
        await self.gateway.broadcast_messages_read(session_id, reader_id, updated)
        return updated

    async def typing(self, session_id: str, user_id: int, is_typing: bool) -> None:
        await self.gateway.broadcast_typing(session_id, user_id, is_typing)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _activate(self, session_id: str, actor_id: int) -> ChatSession:
        try:
            session = await run_in_threadpool(
                self.sessions.activate_session, session_id, actor_id
            )
        except InvalidTransition:
            # The other participant activated it first.
            return await run_in_threadpool(self.sessions.require_session, session_id)
        await self.gateway.broadcast_session_update(
            session_id,
            SocketSessionData(
                session_id=session_id,
                status=session.status,
                previous_status=SessionStatus.PENDING,
                changed_by=actor_id,
                started_at=session.started_at,
            ),
        )
        await self._post_system_message(session_id, SESSION_STARTED_NOTICE)
        return session

    async def _announce_end(
        self, session: ChatSession, previous_status: SessionStatus
    ) -> None:
        status = SessionStatus(session.status)
        await self._post_system_message(session.id, SESSION_ENDED_NOTICES[status])
        await self.gateway.broadcast_session_update(
            session.id,
            SocketSessionData(
                session_id=session.id,
                status=status,
                previous_status=previous_status,
                changed_by=session.ended_by_id,
                started_at=session.started_at,
                ended_at=session.ended_at,
                total_duration=session.total_duration,
                total_cost=session.total_cost,
            ),
        )
        await self.gateway.close_room(session.id)

    async def _post_system_message(self, session_id: str, content: str) -> ChatMessageRead:
        message = await run_in_threadpool(
            self.messages.send_system_message, session_id, content
        )
        payload = ChatMessageRead.model_validate(message)
        await self.gateway.broadcast_message(session_id, payload)
        return payload

    def _load_history(self, doctor_id: int, patient_id: int) -> ChatHistory:
        sessions = self.sessions.get_sessions_between(doctor_id, patient_id)
        return ChatHistory(
            doctor_id=doctor_id,
            patient_id=patient_id,
            sessions=[ChatSessionRead.model_validate(s) for s in sessions],
            messages={
                s.id: [
                    ChatMessageRead.model_validate(m)
                    for m in self.messages.iter_session_messages(s.id)
                ]
                for s in sessions
            },
        )

