from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol

from app.schemas.chat import ChatSessionRead


class Connection(Protocol):
    """A push-channel endpoint for one user device. FastAPI's WebSocket fits."""

    async def send_json(self, data: Any) -> None: ...


SessionResolver = Callable[[str], Awaitable[Optional[ChatSessionRead]]]
