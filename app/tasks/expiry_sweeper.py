"""Periodic expiry sweep for pending and active chat sessions.

Runs inside the API process because room membership lives there: the same
process that expires a session pushes the update to its members.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from typing import Callable, ContextManager, List, Optional

from sqlalchemy.orm import Session

from app.channels.gateway import RealtimeGateway
from app.exceptions.chat import ChatError
from app.infra.logging_config import get_logger
from app.schemas.chat import ChatSessionRead
from app.services.chat_session_manager import ChatSessionManager
from app.utils.db.db_session_helper import db_session

logger = get_logger("expiry_sweeper")


async def sweep_once(
    gateway: RealtimeGateway,
    now: Optional[datetime] = None,
    session_factory: Callable[[], ContextManager[Session]] = db_session,
) -> List[ChatSessionRead]:
    """Expire every session past its deadline and push the updates."""
    with session_factory() as db:
        manager = ChatSessionManager(db, gateway)
        return await manager.expire_idle_sessions(now)


async def run_expiry_sweeper(
    gateway: RealtimeGateway,
    interval_seconds: float,
    stop_event: asyncio.Event,
    session_factory: Callable[[], ContextManager[Session]] = db_session,
) -> None:
    logger.info("Expiry sweeper started (every %ss)", interval_seconds)
    while not stop_event.is_set():
        try:
            expired = await sweep_once(gateway, session_factory=session_factory)
            if expired:
                logger.info("Sweep expired %d sessions", len(expired))
        except ChatError as e:
            # StorageUnavailable and friends: try again next tick
            logger.warning("Expiry sweep failed: %s", e)
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
    logger.info("Expiry sweeper stopped")
