"""Session tokens for the helpdesk API (HS256 JWT in cookie or bearer header).

Claims: ``sub`` (user id), ``role``, ``token_version`` (bumped to revoke all
sessions of a user), ``iat``, ``exp``. Department and head flag are re-read
from the user row on every request.
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt

from helpdesk.core.config import settings

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["sub", "exp", "token_version"]


def create_session_token(
    user_id: UUID,
    role: str,
    token_version: int,
    *,
    expires_in: timedelta | None = None,
) -> str:
    """Sign a session token with the current secret."""
    issued_at = datetime.now(timezone.utc)
    lifetime = expires_in if expires_in is not None else timedelta(hours=settings.JWT_EXPIRES_HOURS)
    claims = {
        "sub": str(user_id),
        "role": role,
        "token_version": token_version,
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_session_token(token: str) -> dict:
    """
    Verify a session token and return its claims.

    The previous secret is still accepted while a rotation is in progress.

    Raises:
        jwt.ExpiredSignatureError: signature valid but token expired
        jwt.InvalidTokenError: no configured secret verifies the token
    """
    failure: jwt.InvalidTokenError | None = None
    for secret in settings.jwt_secrets:
        try:
            return jwt.decode(
                token, secret, algorithms=[ALGORITHM], options={"require": REQUIRED_CLAIMS}
            )
        except jwt.ExpiredSignatureError:
            raise
        except jwt.InvalidTokenError as e:
            failure = e
    raise failure or jwt.InvalidTokenError("No signing secret configured")
