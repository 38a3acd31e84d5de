"""
JWT Authentication Middleware.

Campaigns belong to exactly one owner. The owner id travels as the ``sub``
claim of a signed JWT.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

# JWT Configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days


def _get_secret_key() -> str:
    """Lazy-load the secret key to support testing."""
    from minicrm.config import get_settings
    return get_settings().SECRET_KEY


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed JWT for a user.

    Args:
        user_id: The owner id stored on campaigns.
        expires_delta: Optional custom expiration time.

    Returns:
        A signed JWT string.
    """
    to_encode = {"sub": user_id}

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode["exp"] = expire

    return jwt.encode(to_encode, _get_secret_key(), algorithm=ALGORITHM)


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> str:
    """
    FastAPI dependency that extracts and validates the user id from a JWT.
    Supports both 'Authorization: Bearer' header and 'auth_token' cookie.

    Returns:
        The validated user id.
    """
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token = None

    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        token = request.cookies.get("auth_token")

    if not token:
        raise credentials_exception

    try:
        payload = jwt.decode(token, _get_secret_key(), algorithms=[ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id: Optional[str] = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    logger.debug(f"Authenticated user: {user_id}")
    return user_id
