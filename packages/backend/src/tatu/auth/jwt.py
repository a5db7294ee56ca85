"""JWT token creation and verification.

Tokens are HS256-signed. The subject claim carries the user id; tokens
minted by the legacy accounts service put it under `id` instead, so
both are accepted.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from tatu.config import settings
from tatu.errors import AuthFailure


class TokenError(Exception):
    """Raised when token creation/verification fails."""


def create_access_token(
    user_id: str,
    is_artist: bool = False,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a JWT access token. Used by tests and local tooling."""
    expires = datetime.now(timezone.utc) + timedelta(
        minutes=expires_minutes or settings.access_token_expire_minutes
    )
    payload = {
        "sub": user_id,
        "type": "access",
        "isArtist": is_artist,
        "exp": expires,
        "iat": datetime.now(timezone.utc),
    }
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
        return payload
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")


class JwtIdentityVerifier:
    """Turns a bearer credential into a verified user id.

    The realtime gateway depends only on the `verify` method, so tests
    and alternative identity providers can pass any object that has it.
    """

    def verify(self, token: Optional[str]) -> uuid.UUID:
        if not token or not isinstance(token, str):
            raise AuthFailure("Authentication token is required")
        try:
            payload = verify_token(token)
        except TokenError as e:
            raise AuthFailure(str(e))

        subject = payload.get("sub") or payload.get("id")
        if not subject:
            raise AuthFailure("Token has no subject")
        try:
            return uuid.UUID(str(subject))
        except ValueError:
            raise AuthFailure("Token subject is not a valid user id")
