"""Bearer tokens for the chat socket.

Tokens are issued by the main Panchakarma API; this service only needs to
verify them and read the user id. `create_access_token` exists for local
tooling and tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from app.config import Settings, get_settings

DEFAULT_TOKEN_TTL = timedelta(days=1)


class InvalidToken(Exception):
    """Raised when a bearer token is missing, malformed, expired or has no user id."""


def create_access_token(
    user_id: int,
    expires_delta: Optional[timedelta] = None,
    settings: Optional[Settings] = None,
) -> str:
    settings = settings or get_settings()
    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "userId": user_id,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or DEFAULT_TOKEN_TTL),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_user_id(token: Optional[str], settings: Optional[Settings] = None) -> int:
    """Verify the token and return its user id (`userId` claim, else `sub`)."""
    if not token:
        raise InvalidToken("Authentication token is required")
    settings = settings or get_settings()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    try:
        claims = jwt.decode(
            token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm]
        )
    except JWTError as e:
        raise InvalidToken("Invalid or expired token") from e

    raw = claims.get("userId", claims.get("sub"))
    try:
        user_id = int(raw)
    except (TypeError, ValueError) as e:
        raise InvalidToken("Token does not identify a user") from e
    if user_id <= 0:
        raise InvalidToken("Token does not identify a user")
    return user_id
