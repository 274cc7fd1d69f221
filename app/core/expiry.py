"""When a chat session's `expires_at` is set or moved.

Modes (SESSION_EXPIRY_MODE):
    off    never set; sessions only end explicitly
    fixed  set at creation (pending TTL) and reset at activation (active TTL)
    idle   like fixed, and every accepted message moves it to at least now + idle TTL
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from app.config import Settings

EXPIRY_MODES = ("off", "fixed", "idle")


@dataclass(frozen=True)
class ExpiryPolicy:
    mode: str = "fixed"
    pending_ttl: timedelta = timedelta(minutes=30)
    active_ttl: timedelta = timedelta(minutes=60)
    idle_ttl: timedelta = timedelta(minutes=15)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExpiryPolicy":
        mode = (settings.session_expiry_mode or "off").lower()
        if mode not in EXPIRY_MODES:
            raise ValueError(f"Unknown SESSION_EXPIRY_MODE: {mode}")
        return cls(
            mode=mode,
            pending_ttl=timedelta(minutes=settings.session_pending_ttl_minutes),
            active_ttl=timedelta(minutes=settings.session_active_ttl_minutes),
            idle_ttl=timedelta(minutes=settings.session_idle_ttl_minutes),
        )

    def on_create(self, now: datetime) -> Optional[datetime]:
        if self.mode == "off":
            return None
        return now + self.pending_ttl

    def on_activate(self, now: datetime) -> Optional[datetime]:
        if self.mode == "off":
            return None
        return now + self.active_ttl

    def on_message(
        self, now: datetime, current: Optional[datetime]
    ) -> Optional[datetime]:
        if self.mode != "idle":
            return current
        deadline = now + self.idle_ttl
        if current is not None and current > deadline:
            return current
        return deadline
