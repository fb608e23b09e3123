"""JWT verification (and issuing, for tests and the CLI).

Claims used:
- sub: participant id
- role: "requester" or "worker" (optional; one account may act as both)
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from parley.config import settings


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    participant_id: str,
    role: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a JWT access token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": participant_id,
        "type": "access",
        "exp": now + timedelta(
            minutes=expires_minutes or settings.access_token_expire_minutes
        ),
        "iat": now,
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

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

    if payload.get("type", "access") != "access" or not payload.get("sub"):
        raise TokenError("Invalid token: not an access token")
    return payload
