"""Bearer token authentication.

Tokens are issued by the intranet login service. This API only verifies the
signature and resolves the caller through the user directory.
"""
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from intranet.core.config import settings
from intranet.core.database import get_db
from intranet.core.logging import get_logger
from intranet.modules.directory import UserRef, get_user

logger = get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> dict:
    """Verify a token and return its claims. Raises jwt.InvalidTokenError."""
    if not settings.JWT_SECRET:
        raise jwt.InvalidTokenError("JWT_SECRET is not configured")
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


def subject_of(claims: dict) -> UUID:
    """The user id carried by a token: `userId`, falling back to `sub`."""
    raw = claims.get("userId") or claims.get("sub")
    if not raw:
        raise jwt.InvalidTokenError("Token has no subject")
    try:
        return UUID(str(raw))
    except ValueError:
        raise jwt.InvalidTokenError("Token subject is not a user id")


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> UserRef:
    """
    Resolve the authenticated caller.

    Raises 401 when the header is missing, the token is invalid or expired,
    or the user no longer exists or is inactive.
    """
    if credentials is None:
        raise _unauthorized("Authentication required")

    try:
        claims = decode_token(credentials.credentials)
        user_id = subject_of(claims)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise _unauthorized("Invalid token")

    user = await get_user(db, user_id)
    if user is None:
        logger.warning("Token subject not found or inactive", user_id=str(user_id))
        raise _unauthorized("User not found or inactive")
    return user
