"""FastAPI auth dependencies.

Used as Depends() on routers to extract the caller's identity from the
Authorization: Bearer header.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException

from parley.auth.jwt import TokenError, verify_token


class CurrentIdentity:
    """The authenticated caller.

    `token` is kept so downstream identity lookups can be made on the
    caller's behalf.
    """

    def __init__(
        self,
        participant_id: str,
        role: Optional[str] = None,
        token: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ):
        self.participant_id = participant_id
        self.role = role
        self.token = token
        self.scopes = scopes or ["all"]

    def has_scope(self, scope: str) -> bool:
        return "all" in self.scopes or scope in self.scopes


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentIdentity]:
    """Identity from a bearer token, or None when no token was sent."""
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization[7:]
    try:
        payload = verify_token(token)
    except TokenError as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return CurrentIdentity(
        participant_id=str(payload["sub"]),
        role=payload.get("role"),
        token=token,
        scopes=payload.get("scopes"),
    )


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Identity of the caller (required — 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
