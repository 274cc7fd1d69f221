"""
Realtime delivery gateway.

Keeps the process-local room table (session id -> member user ids) and the
user -> connections table, and fans events out to connected clients. Rooms
hold no history: a member who is offline simply misses the push and reads
the message store later.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from app.channels.base import Connection, SessionResolver
from app.channels.envelope import (
    MESSAGES_READ,
    NEW_MESSAGE,
    SESSION_JOINED,
    SESSION_UPDATED,
    USER_JOINED,
    USER_LEFT,
    USER_TYPING,
    build_event,
)
from app.constants.chat import TERMINAL_SESSION_STATUSES
from app.exceptions.chat import Forbidden, NotFound
from app.schemas.chat import (
    ChatMessageRead,
    ChatSessionRead,
    SocketSessionData,
    SocketUserData,
)
from app.utils.clock import utcnow

logger = logging.getLogger(__name__)


class RealtimeGateway:
    def __init__(self, session_resolver: Optional[SessionResolver] = None) -> None:
        self._resolve = session_resolver
        self._rooms: Dict[str, Set[int]] = {}
        self._connections: Dict[int, List[Connection]] = {}
        self._room_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register_connection(self, user_id: int, connection: Connection) -> None:
        connections = self._connections.setdefault(user_id, [])
        if connection not in connections:
            connections.append(connection)

    async def unregister_connection(self, user_id: int, connection: Connection) -> List[str]:
        """
        Forget one connection. When it was the user's last one, the user
        leaves every room; the ids of those rooms are returned.
        """
        connections = self._connections.get(user_id, [])
        if connection in connections:
            connections.remove(connection)
        if connections:
            return []
        self._connections.pop(user_id, None)
        left = [sid for sid, members in list(self._rooms.items()) if user_id in members]
        for session_id in left:
            await self.leave(session_id, user_id)
        return left

    def online_users(self) -> Set[int]:
        return set(self._connections)

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def join(
        self,
        session_id: str,
        user_id: int,
        session: Optional[ChatSessionRead] = None,
        user_name: Optional[str] = None,
    ) -> ChatSessionRead:
        """
        Admit a participant of a non-terminal session to its room. The joiner
        receives `session-joined`, the other members `user-joined`.
        """
        if session is None and self._resolve is not None:
            session = await self._resolve(session_id)
        if session is None:
            raise NotFound("Session", session_id)
        if user_id not in (session.patient_id, session.doctor_id):
            raise Forbidden(f"User {user_id} is not a participant of {session_id}")
        if session.status in TERMINAL_SESSION_STATUSES:
            raise Forbidden(f"Session {session_id} has already ended")

        async with self._room_lock(session_id):
            members = self._rooms.setdefault(session_id, set())
            others = members - {user_id}
            members.add(user_id)

        await self._deliver([user_id], build_event(SESSION_JOINED, session))
        joined = SocketUserData(user_id=user_id, user_name=user_name, timestamp=utcnow())
        await self._deliver(others, build_event(USER_JOINED, joined))
        logger.debug("User %s joined room %s", user_id, session_id)
        return session

    async def subscribe(self, session_id: str, user_id: int) -> bool:
        """
        Add membership without any events or checks; the caller has already
        verified the user takes part in the open session. Returns False when
        the user was already a member.
        """
        async with self._room_lock(session_id):
            members = self._rooms.setdefault(session_id, set())
            if user_id in members:
                return False
            members.add(user_id)
        return True

    async def leave(self, session_id: str, user_id: int) -> bool:
        """Remove membership. Returns False when the user was not a member."""
        if not self.is_member(session_id, user_id):
            return False
        async with self._room_lock(session_id):
            members = self._rooms.get(session_id)
            if not members or user_id not in members:
                return False
            members.discard(user_id)
            remaining = set(members)
            if not members:
                self._drop_room(session_id)

        left = SocketUserData(user_id=user_id, timestamp=utcnow())
        await self._deliver(remaining, build_event(USER_LEFT, left))
        return True

    def members(self, session_id: str) -> Set[int]:
        return set(self._rooms.get(session_id, ()))

    def is_member(self, session_id: str, user_id: int) -> bool:
        return user_id in self._rooms.get(session_id, ())

    async def close_room(self, session_id: str) -> Set[int]:
        """Drop a room (after the session ended). Returns its former members."""
        if session_id not in self._rooms:
            self._room_locks.pop(session_id, None)
            return set()
        async with self._room_lock(session_id):
            members = self._rooms.get(session_id, set())
            self._drop_room(session_id)
        return set(members)

    # ------------------------------------------------------------------
    # Broadcasts
    # ------------------------------------------------------------------

    async def broadcast_message(self, session_id: str, message: ChatMessageRead) -> Set[int]:
        """Push `new-message` to every member. Returns the users reached."""
        members = await self._snapshot(session_id)
        if not members:
            return set()
        return await self._deliver(members, build_event(NEW_MESSAGE, message))

    async def broadcast_session_update(
        self, session_id: str, update: SocketSessionData
    ) -> Set[int]:
        members = await self._snapshot(session_id)
        if not members:
            return set()
        return await self._deliver(members, build_event(SESSION_UPDATED, update))

    async def broadcast_typing(
        self,
        session_id: str,
        user_id: int,
        is_typing: bool,
        user_name: Optional[str] = None,
    ) -> Set[int]:
        """Ephemeral; never echoed to the typist, ignored for non-members."""
        members = await self._snapshot(session_id)
        if user_id not in members:
            return set()
        data = SocketUserData(
            user_id=user_id,
            user_name=user_name,
            is_typing=is_typing,
            timestamp=utcnow(),
        )
        return await self._deliver(members - {user_id}, build_event(USER_TYPING, data))

    async def broadcast_messages_read(
        self, session_id: str, reader_id: int, message_ids: List[str]
    ) -> Set[int]:
        if not message_ids:
            return set()
        members = await self._snapshot(session_id)
        data = {
            "sessionId": session_id,
            "readerId": reader_id,
            "messageIds": list(message_ids),
            "timestamp": utcnow(),
        }
        return await self._deliver(members - {reader_id}, build_event(MESSAGES_READ, data))

    async def send_to_user(self, user_id: int, event: str, data: Any = None) -> bool:
        """Direct push outside any room (errors, acknowledgements)."""
        reached = await self._deliver([user_id], build_event(event, data))
        return user_id in reached

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _room_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._room_locks.get(session_id)
        if lock is None:
            lock = self._room_locks[session_id] = asyncio.Lock()
        return lock

    def _drop_room(self, session_id: str) -> None:
        self._rooms.pop(session_id, None)
        self._room_locks.pop(session_id, None)

    async def _snapshot(self, session_id: str) -> Set[int]:
        # Unknown rooms get no lock entry.
        if session_id not in self._rooms:
            return set()
        async with self._room_lock(session_id):
            return set(self._rooms.get(session_id, ()))

    async def _deliver(self, user_ids: Iterable[int], frame: dict) -> Set[int]:
        reached: Set[int] = set()
        for user_id in list(user_ids):
            for connection in list(self._connections.get(user_id, [])):
                try:
                    await connection.send_json(frame)
                except Exception as e:
                    logger.warning(
                        "Dropping connection of user %s after failed %s push: %s",
                        user_id,
                        frame.get("event"),
                        e,
                    )
                    self._forget(user_id, connection)
                    continue
                reached.add(user_id)
        return reached

    def _forget(self, user_id: int, connection: Connection) -> None:
        connections = self._connections.get(user_id)
        if connections is None:
            return
        if connection in connections:
            connections.remove(connection)
        if not connections:
            self._connections.pop(user_id, None)
            for session_id, members in list(self._rooms.items()):
                members.discard(user_id)
                if not members:
                    self._drop_room(session_id)
