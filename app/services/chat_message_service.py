"""Message store: append, delivery state, edits, deletes and paginated reads."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from app.config import Settings, get_settings
from app.constants.chat import (
    MESSAGE_STATUS_RANK,
    SYSTEM_SENDER_ID,
    MessageDirection,
    MessageStatus,
    MessageType,
    SessionStatus,
    SessionType,
    SortOrder,
)
from app.core.billing import compute_total_cost
from app.core.expiry import ExpiryPolicy
from app.core.session_locks import SessionLockRegistry, session_locks
from app.exceptions.chat import (
    AlreadyDeleted,
    ChatValidationError,
    Forbidden,
    InvalidState,
    NotFound,
    RateLimited,
    SenderNotParticipant,
    SessionNotActive,
)
from app.models.chat_message import ChatMessage
from app.models.chat_session import ChatSession
from app.schemas.chat import MessageFilters, SendMessageRequest
from app.services.soft_delete_service import SoftDeleteService
from app.utils.clock import utcnow
from app.utils.db.filtering import apply_filters
from app.utils.db.storage import storage_guard
from app.utils.rate_limit import check_message_rate_limit

logger = logging.getLogger(__name__)

MESSAGE_SORT_COLUMNS = {
    "sentAt": ChatMessage.sent_at,
    "createdAt": ChatMessage.created_at,
}

LISTING_BATCH_SIZE = 200


class MessageListing:
    """
    Lazy, restartable view over one page of a session's messages.

    Every iteration re-runs the query, so a listing can be walked more than
    once and always reflects the current rows.
    """

    def __init__(self, query: Query, offset: int = 0, limit: Optional[int] = None) -> None:
        self._query = query
        self.offset = offset
        self.limit = limit

    def __iter__(self) -> Iterator[ChatMessage]:
        # limit=None walks to the end of the session
        remaining = self.limit
        position = self.offset
        while remaining is None or remaining > 0:
            size = LISTING_BATCH_SIZE if remaining is None else min(LISTING_BATCH_SIZE, remaining)
            batch = self._query.offset(position).limit(size).all()
            yield from batch
            if len(batch) < size:
                return
            if remaining is not None:
                remaining -= len(batch)
            position += len(batch)

    def all(self) -> List[ChatMessage]:
        return list(self)

    def total(self) -> int:
        """Number of matching messages across every page."""
        return self._query.order_by(None).count()


class ChatMessageService(SoftDeleteService[ChatMessage]):
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        locks: Optional[SessionLockRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
        rate_limit_client=None,
    ) -> None:
        super().__init__(db, ChatMessage)
        self.settings = settings or get_settings()
        self.locks = locks or session_locks
        self.clock = clock
        self.expiry = ExpiryPolicy.from_settings(self.settings)
        self.rate_limit_client = rate_limit_client

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def send_message(self, sender_id: int, request: SendMessageRequest) -> ChatMessage:
        message, _ = self.submit_message(sender_id, request)
        return message

    def submit_message(
        self, sender_id: int, request: SendMessageRequest
    ) -> Tuple[ChatMessage, bool]:
        """
        Append a participant message to an active session.

        Returns (message, created). A repeated idempotency token returns the
        stored message with created=False and changes nothing.
        """
        session_id = request.session_id
        with self.locks.hold(session_id), storage_guard(self.db, "send_message"):
            session = self._lock_session(session_id)
            if not session.has_participant(sender_id):
                raise SenderNotParticipant(session_id, sender_id)

            if request.idempotency_token:
                existing = self._find_by_token(session_id, request.idempotency_token)
                if existing is not None:
                    self.db.commit()
                    return existing, False

            if session.status != SessionStatus.ACTIVE:
                raise SessionNotActive(session_id, session.status)
            if request.reply_to_message_id:
                self._require_reply_target(session_id, request.reply_to_message_id)
            if not check_message_rate_limit(
                session_id,
                sender_id,
                self.rate_limit_client,
                self.settings.message_rate_limit_per_minute,
            ):
                raise RateLimited(sender_id)

            now = self._next_sent_at(session_id)
            message = ChatMessage(
                id=str(uuid.uuid4()),
                session_id=session_id,
                sender_id=sender_id,
                message_type=request.message_type,
                direction=(
                    MessageDirection.INBOUND
                    if sender_id == session.patient_id
                    else MessageDirection.OUTBOUND
                ),
                content=request.content,
                file_url=request.file_url,
                file_name=request.file_name,
                file_type=request.file_type,
                file_size=request.file_size,
                status=MessageStatus.PENDING,
                sent_at=now,
                message_id=request.idempotency_token or str(uuid.uuid4()),
                reply_to_message_id=request.reply_to_message_id,
                is_edited=False,
                is_deleted=False,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self.db.add(message)

            session.total_messages = ChatSession.total_messages + 1
            session.expires_at = self.expiry.on_message(now, session.expires_at)
            try:
                self.db.flush()
            except IntegrityError:
                # Lost a race on the same token from another process.
                self.db.rollback()
                existing = self._find_by_token(session_id, request.idempotency_token)
                if existing is None:
                    raise
                return existing, False

            self.db.refresh(session)
            if session.session_type == SessionType.CHAT:
                session.total_cost = compute_total_cost(
                    session.session_type,
                    session.cost_per_unit,
                    session.total_messages,
                    session.total_duration,
                )
            self.db.commit()
            self.db.refresh(message)
        logger.debug("Stored message %s in session %s", message.id, session_id)
        return message, True

    def send_system_message(self, session_id: str, content: str) -> ChatMessage:
        """System notices are not billed and do not count toward total_messages."""
        with self.locks.hold(session_id), storage_guard(self.db, "send_system_message"):
            session = self._lock_session(session_id)
            now = self._next_sent_at(session.id)
            message = ChatMessage(
                id=str(uuid.uuid4()),
                session_id=session.id,
                sender_id=SYSTEM_SENDER_ID,
                message_type=MessageType.SYSTEM,
                direction=MessageDirection.SYSTEM,
                content=content,
                status=MessageStatus.DELIVERED,
                sent_at=now,
                delivered_at=now,
                message_id=str(uuid.uuid4()),
                is_edited=False,
                is_deleted=False,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            self.db.add(message)
            self.db.commit()
            self.db.refresh(message)
        return message

    def mark_status(
        self, message_id: str, status: MessageStatus | str
    ) -> ChatMessage:
        """
        Advance delivery state. Moving backwards is a no-op; any state can
        fall to failed, and failed never changes again.
        """
        try:
            status = MessageStatus(status)
        except ValueError as e:
            raise ChatValidationError(f"Unknown message status: {status}") from e
        message = self.require_message(message_id)
        with self.locks.hold(message.session_id), storage_guard(self.db, "mark_status"):
            message = self._lock_message(message_id)
            changed = self._apply_status(message, status)
            self.db.commit()
            if changed:
                self.db.refresh(message)
        return message

    def mark_messages_read(
        self,
        session_id: str,
        reader_id: int,
        message_ids: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """
        Mark the other participant's messages as read for `reader_id`.
        With no ids, every unread message in the session is marked.
        Returns the ids that changed.
        """
        with self.locks.hold(session_id), storage_guard(self.db, "mark_messages_read"):
            session = self._lock_session(session_id)
            if not session.has_participant(reader_id):
                raise Forbidden(f"User {reader_id} cannot read session {session_id}")
            query = (
                self.active_query()
                .filter(
                    ChatMessage.session_id == session_id,
                    ChatMessage.sender_id != reader_id,
                    ChatMessage.sender_id != SYSTEM_SENDER_ID,
                    ChatMessage.is_deleted.is_(False),
                    ChatMessage.status.in_(
                        [MessageStatus.PENDING, MessageStatus.SENT, MessageStatus.DELIVERED]
                    ),
                )
                .with_for_update()
            )
            if message_ids is not None:
                if not message_ids:
                    self.db.commit()
                    return []
                query = query.filter(ChatMessage.id.in_(list(message_ids)))
            updated = [
                message.id
                for message in query.order_by(ChatMessage.sent_at, ChatMessage.id)
                if self._apply_status(message, MessageStatus.READ)
            ]
            self.db.commit()
        return updated

    def edit_message(self, message_id: str, editor_id: int, content: str) -> ChatMessage:
        if not content or not content.strip():
            raise ChatValidationError("content must not be empty")
        message = self.require_message(message_id)
        with self.locks.hold(message.session_id), storage_guard(self.db, "edit_message"):
            message = self._lock_message(message_id)
            if message.sender_id != editor_id:
                raise Forbidden("Only the sender can edit a message")
            if message.is_deleted:
                raise AlreadyDeleted(message_id)
            if message.message_type == MessageType.SYSTEM:
                raise InvalidState("System messages cannot be edited")
            message.content = content
            message.is_edited = True
            self.db.commit()
            self.db.refresh(message)
        return message

    def delete_message(self, message_id: str, requester_id: int) -> ChatMessage:
        """Soft delete; content is kept for audit. Deleting twice is a no-op."""
        message = self.require_message(message_id)
        with self.locks.hold(message.session_id), storage_guard(self.db, "delete_message"):
            message = self._lock_message(message_id)
            if message.sender_id != requester_id:
                raise Forbidden("Only the sender can delete a message")
            if not message.is_deleted:
                message.is_deleted = True
                message.deleted_at = self.clock()
            self.db.commit()
            self.db.refresh(message)
        return message

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        return self.active_query().filter(ChatMessage.id == message_id).first()

    def require_message(self, message_id: str) -> ChatMessage:
        message = self.get_message(message_id)
        if message is None:
            raise NotFound("Message", message_id)
        return message

    def get_messages_query(self, session_id: str, filters: MessageFilters) -> Query:
        query = apply_filters(
            self.active_query(),
            ChatMessage,
            {
                "session_id": session_id,
                "message_type": filters.message_type,
                "status": filters.status,
                "sent_at": [
                    {"operator": ">=", "value": filters.start_date},
                    {"operator": "<=", "value": filters.end_date},
                ],
            },
        )
        if not filters.include_deleted:
            query = query.filter(ChatMessage.is_deleted.is_(False))
        column = MESSAGE_SORT_COLUMNS[filters.sort_by]
        ordering = column.desc() if filters.sort_order == SortOrder.DESC else column.asc()
        return query.order_by(ordering, ChatMessage.id.asc())

    def list_messages(
        self, session_id: str, filters: Optional[MessageFilters] = None
    ) -> MessageListing:
        filters = filters or MessageFilters()
        return MessageListing(
            self.get_messages_query(session_id, filters),
            offset=(filters.page - 1) * filters.limit,
            limit=filters.limit,
        )

    def iter_session_messages(self, session_id: str) -> MessageListing:
        """Every visible message of a session in sent order, unpaginated."""
        return MessageListing(self.get_messages_query(session_id, MessageFilters()))

    def get_latest_message(self, session_id: str) -> Optional[ChatMessage]:
        return (
            self.active_query()
            .filter(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc())
            .first()
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_session(self, session_id: str) -> ChatSession:
        session = (
            self.db.query(ChatSession)
            .filter(ChatSession.id == session_id, ChatSession.is_active.is_(True))
            .with_for_update()
            .populate_existing()
            .first()
        )
        if session is None:
            raise NotFound("Session", session_id)
        return session

    def _lock_message(self, message_id: str) -> ChatMessage:
        message = (
            self.active_query()
            .filter(ChatMessage.id == message_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if message is None:
            raise NotFound("Message", message_id)
        return message

    def _find_by_token(self, session_id: str, token: Optional[str]) -> Optional[ChatMessage]:
        if not token:
            return None
        return (
            self.db.query(ChatMessage)
            .filter(ChatMessage.session_id == session_id, ChatMessage.message_id == token)
            .first()
        )

    def _require_reply_target(self, session_id: str, reply_to: str) -> None:
        target = (
            self.active_query()
            .filter(ChatMessage.id == reply_to, ChatMessage.session_id == session_id)
            .first()
        )
        if target is None:
            raise NotFound("Message", reply_to)

    def _next_sent_at(self, session_id: str) -> datetime:
        """Clock time, but never earlier than the last message in the session."""
        now = self.clock()
        latest = (
            self.db.query(func.max(ChatMessage.sent_at))
            .filter(ChatMessage.session_id == session_id)
            .scalar()
        )
        return max(now, latest) if latest else now

    def _apply_status(self, message: ChatMessage, status: MessageStatus) -> bool:
        current = MessageStatus(message.status)
        if message.is_deleted or current == MessageStatus.FAILED or current == status:
            return False
        if status != MessageStatus.FAILED and (
            MESSAGE_STATUS_RANK[status] < MESSAGE_STATUS_RANK[current]
        ):
            return False
        now = max(self.clock(), message.sent_at)
        if status in (MessageStatus.DELIVERED, MessageStatus.READ) and message.delivered_at is None:
            message.delivered_at = now
        if status == MessageStatus.READ:
            message.read_at = now
        message.status = status
        return True
