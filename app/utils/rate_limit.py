"""
Optional per-user message rate limiting.

Uses Redis when MESSAGE_RATE_LIMIT_PER_MINUTE and REDIS_HOST are set.
If not set or Redis unavailable, no limit is applied.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis

from app.config import Settings

logger = logging.getLogger(__name__)


def build_rate_limit_client(settings: Settings) -> Optional[redis.Redis]:
    """Return a Redis client when rate limiting is configured, else None."""
    if not settings.redis_host or not settings.message_rate_limit_per_minute:
        return None
    return redis.Redis(host=settings.redis_host, port=settings.redis_port)


def check_message_rate_limit(
    session_id: str,
    user_id: int,
    redis_client: Optional[object],
    limit_per_minute: Optional[int],
) -> bool:
    """
    Check if (session_id, user_id) is within the per-minute send limit.
    Returns True if allowed, False if rate limited.
    If redis_client or limit_per_minute is None, always returns True.
    """
    if redis_client is None or limit_per_minute is None or limit_per_minute <= 0:
        return True
    key = f"chat:ratelimit:{session_id}:{user_id}"
    try:
        pipe = redis_client.pipeline()
        pipe.incr(key)
        pipe.expire(key, 60)
        results = pipe.execute()
        count = results[0] if results else 0
        return count <= limit_per_minute
    except redis.RedisError as e:
        logger.warning("Rate limit check failed, allowing request: %s", e)
        return True
