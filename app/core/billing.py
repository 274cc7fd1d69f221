"""Session cost rules.

Chat sessions are billed per participant message; audio and video calls are
billed per second between `started_at` and `ended_at`.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from app.config import Settings
from app.constants.chat import SessionType
from app.models.doctor_service import DoctorService

CENT = Decimal("0.01")

# (enabled flag, price column) on DoctorService per session type
_PRICING_COLUMNS = {
    SessionType.CHAT: ("chat_enabled", "chat_price"),
    SessionType.AUDIO_CALL: ("audio_call_enabled", "audio_call_price"),
    SessionType.VIDEO_CALL: ("video_call_enabled", "video_call_price"),
}


def to_money(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(
        CENT, rounding=ROUND_HALF_UP
    )


def is_time_based(session_type: str) -> bool:
    return session_type in (SessionType.AUDIO_CALL, SessionType.VIDEO_CALL)


def default_unit_price(session_type: str, settings: Settings) -> Decimal:
    prices = {
        SessionType.CHAT: settings.default_chat_price,
        SessionType.AUDIO_CALL: settings.default_audio_call_price,
        SessionType.VIDEO_CALL: settings.default_video_call_price,
    }
    return to_money(prices[SessionType(session_type)])


def offers_session_type(pricing: Optional[DoctorService], session_type: str) -> bool:
    """Doctors without a pricing row offer every type at the default price."""
    if pricing is None:
        return True
    enabled_attr, _ = _PRICING_COLUMNS[SessionType(session_type)]
    return bool(getattr(pricing, enabled_attr))


def unit_price_for(
    pricing: Optional[DoctorService], session_type: str, settings: Settings
) -> Decimal:
    if pricing is None:
        return default_unit_price(session_type, settings)
    _, price_attr = _PRICING_COLUMNS[SessionType(session_type)]
    return to_money(getattr(pricing, price_attr))


def duration_seconds(started_at: Optional[datetime], ended_at: datetime) -> int:
    if started_at is None:
        return 0
    return max(0, int((ended_at - started_at).total_seconds()))


def compute_total_cost(
    session_type: str,
    cost_per_unit,
    total_messages: int,
    total_duration: int,
) -> Decimal:
    units = total_duration if is_time_based(session_type) else total_messages
    return to_money(Decimal(str(cost_per_unit or 0)) * units)
