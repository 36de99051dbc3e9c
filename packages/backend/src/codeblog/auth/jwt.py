"""Session token creation and verification.

Learn: Users sign in through the forum's login service, which hands out
a JWT signed with the shared secret. This module only needs to check
those tokens; create_session_token exists for the login service and tests.

The token carries the user id in "sub" and type="session".
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from codeblog.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_session_token(
    user_id: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a signed session JWT for a user."""
    now = datetime.now(timezone.utc)
    expires = now + timedelta(
        minutes=expires_minutes or settings.session_token_expire_minutes
    )
    payload = {
        "sub": user_id,
        "type": "session",
        "exp": expires,
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_session_token(token: str) -> dict:
    """Verify and decode a session JWT.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if payload.get("type") != "session" or not payload.get("sub"):
        raise TokenError("Not a session token")
    return payload


def verify_session_token(token: str) -> Optional[str]:
    """Return the user id a session token belongs to, or None."""
    try:
        return decode_session_token(token)["sub"]
    except TokenError:
        return None
