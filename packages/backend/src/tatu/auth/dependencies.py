"""FastAPI auth dependencies.

Used as Depends() in route handlers to extract and validate the current
user from an `Authorization: Bearer <jwt>` header.
"""

import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException

from tatu.auth.jwt import JwtIdentityVerifier
from tatu.errors import AuthFailure

_verifier = JwtIdentityVerifier()


class CurrentIdentity:
    """The authenticated user making the request."""

    def __init__(self, user_id: uuid.UUID):
        self.user_id = user_id


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
) -> Optional[CurrentIdentity]:
    """Extract current identity (optional — returns None if no auth)."""
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization[7:]
    try:
        return CurrentIdentity(user_id=_verifier.verify(token))
    except AuthFailure as e:
        raise HTTPException(
            status_code=401,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def get_current_user(
    identity: Optional[CurrentIdentity] = Depends(get_current_user_optional),
) -> CurrentIdentity:
    """Extract current identity (required — 401 if no auth)."""
    if not identity:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
