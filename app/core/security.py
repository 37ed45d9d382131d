"""
Security Module
===============

JWT session token utilities.

Tokens are issued by the account service; this service only needs to
validate them (and to mint them in tests and admin scripts).
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from app.config import settings

DEFAULT_ACCESS_TOKEN_TTL = timedelta(hours=24)


def create_access_token(
    user_id: int,
    expires_delta: Optional[timedelta] = None,
    **claims: Any,
) -> str:
    """
    Create a JWT access token for a user.

    Args:
        user_id: Integer user id, stored in the ``sub`` claim
        expires_delta: Custom expiration time (optional)
        **claims: Extra claims to embed

    Returns:
        Encoded JWT token string
    """
    now = datetime.now(timezone.utc)
    to_encode = dict(claims)
    to_encode.update({
        "sub": str(user_id),
        "exp": now + (expires_delta or DEFAULT_ACCESS_TOKEN_TTL),
        "iat": now,
        "type": "access",
    })

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[int]:
    """Return the positive integer user id of a valid access token."""
    payload = decode_token(token)
    if payload is None or payload.get("type") != "access":
        return None

    subject = payload.get("sub")
    try:
        user_id = int(str(subject))
    except (TypeError, ValueError):
        return None
    return user_id if user_id > 0 else None
