"""
Chat socket endpoint.

One WebSocket per user device. The client authenticates with a bearer token
(``token`` query parameter or ``Authorization`` header), then sends
``{"event": ..., "data": ...}`` frames. Failures come back as ``error``
events; the connection stays open.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.auth.tokens import InvalidToken, decode_user_id
from app.channels import envelope
from app.config import Settings, get_settings
from app.core.app_state import state
from app.db import get_db
from app.exceptions.chat import ChatError, ChatValidationError
from app.schemas.chat import (
    SocketEndData,
    SocketEvent,
    SocketMessageData,
    SocketReadData,
    SocketSessionRef,
)
from app.services.chat_session_manager import ChatSessionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def authenticate_socket(websocket: WebSocket, settings: Settings) -> int:
    if settings.disable_auth:
        raw = websocket.query_params.get("user_id")
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise InvalidToken("user_id query parameter is required") from e
    token: Optional[str] = websocket.query_params.get("token")
    if not token:
        token = websocket.headers.get("authorization")
    return decode_user_id(token, settings)


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, db: Session = Depends(get_db)) -> None:
    settings = get_settings()
    try:
        user_id = authenticate_socket(websocket, settings)
    except InvalidToken as e:
        logger.info("Rejected chat socket: %s", e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e))
        return

    await websocket.accept()
    gateway = state.gateway
    gateway.register_connection(user_id, websocket)
    manager = ChatSessionManager(
        db, gateway, settings, rate_limit_client=state.rate_limit_client
    )
    logger.info("User %s connected to chat socket", user_id)
    try:
        rooms = await manager.subscribe_open_sessions(user_id)
        if rooms:
            logger.debug("User %s rejoined rooms %s", user_id, rooms)
        while True:
            raw = await websocket.receive_text()
            try:
                await dispatch_event(manager, websocket, user_id, raw)
            except ChatError as e:
                await websocket.send_json(envelope.build_event(envelope.ERROR, e.to_payload()))
            except ValidationError as e:
                error = ChatValidationError(_first_error(e))
                await websocket.send_json(envelope.build_event(envelope.ERROR, error.to_payload()))
    except WebSocketDisconnect:
        logger.info("User %s disconnected from chat socket", user_id)
    finally:
        await gateway.unregister_connection(user_id, websocket)


async def dispatch_event(
    manager: ChatSessionManager, websocket: WebSocket, user_id: int, raw: str
) -> None:
    frame = SocketEvent.model_validate_json(raw)
    if frame.event not in envelope.CLIENT_EVENTS:
        raise ChatValidationError(f"Unknown event: {frame.event}")
    data = frame.data or {}

    if frame.event == envelope.JOIN_SESSION:
        ref = SocketSessionRef.model_validate(data)
        await manager.join_session(ref.session_id, user_id)
    elif frame.event == envelope.LEAVE_SESSION:
        ref = SocketSessionRef.model_validate(data)
        await manager.leave_session(ref.session_id, user_id)
    elif frame.event == envelope.SEND_MESSAGE:
        request = SocketMessageData.model_validate(data).to_request()
        message = await manager.send_message(user_id, request)
        if not manager.gateway.is_member(request.session_id, user_id):
            # The sender only sees room broadcasts after joining.
            await websocket.send_json(envelope.build_event(envelope.NEW_MESSAGE, message))
    elif frame.event in (envelope.TYPING_START, envelope.TYPING_STOP):
        ref = SocketSessionRef.model_validate(data)
        await manager.typing(
            ref.session_id, user_id, frame.event == envelope.TYPING_START
        )
    elif frame.event == envelope.MARK_READ:
        read = SocketReadData.model_validate(data)
        await manager.mark_read(read.session_id, user_id, read.message_ids)
    elif frame.event == envelope.END_SESSION:
        end = SocketEndData.model_validate(data)
        was_member = manager.gateway.is_member(end.session_id, user_id)
        session = await manager.end_session(end.session_id, user_id, end.reason)
        if not was_member:
            await websocket.send_json(
                envelope.build_event(envelope.SESSION_UPDATED, session)
            )


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid payload"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
