"""
Bearer tokens.

HS256 JWTs carrying the user id and a one-hour expiry, presented as
``Authorization: Bearer <token>``.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ..utils.config import Settings
from .errors import Unauthenticated

logger = logging.getLogger(__name__)


def create_access_token(user_id: str, settings: Settings, now: Optional[datetime] = None) -> str:
    """
    Mint a bearer token for user_id.

    Args:
        user_id: Subject of the token.
        settings: Provides the signing key, algorithm and TTL.
        now: Issue time (defaults to current UTC time).

    Returns:
        Encoded JWT string.
    """
    now = now or datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "iat": now,
        "exp": now + timedelta(seconds=settings.access_token_ttl_seconds),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> str:
    """
    Validate a bearer token and return its user id.

    Raises:
        Unauthenticated: For any missing, malformed, forged or expired token.
    """
    if not token:
        raise Unauthenticated()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected bearer token: {e}")
        raise Unauthenticated()
    return payload["sub"]
