"""JWT primitives for user principals and OAuth ``state``.

Two token types share the signing key but are never interchangeable:
- "access": bearer token identifying the end user (``sub`` = user id).
  Issuing these belongs to the application's own auth service;
  create_access_token exists for local tooling and tests.
- "oauth_state": short-lived value round-tripped through the CRM's
  authorization redirect, binding the callback to the user who started it.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.dealpulse.config import get_settings
from src.dealpulse.errors import InvalidStateError

logger = logging.getLogger(__name__)

OAUTH_STATE_TOKEN_TYPE = "oauth_state"


# ── JWT Token Creation ────────────────────────────────────────────────────────


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    The data dict should contain at minimum:
    - sub: user_id (str)
    """
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access",
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


# ── JWT Token Verification ────────────────────────────────────────────────────


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string.
        token_type: Expected token type.

    Returns:
        The decoded payload dict.

    Raises:
        HTTPException(401): If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if payload.get("type") != token_type:
        raise credentials_exception
    if not payload.get("sub"):
        raise credentials_exception
    return payload


# ── OAuth State ───────────────────────────────────────────────────────────────


def encode_oauth_state(user_id: str, ttl: timedelta | None = None) -> str:
    """Sign an expiring state value naming the user who starts authorization."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (ttl or timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES))
    claims = {
        "sub": user_id,
        "type": OAUTH_STATE_TOKEN_TYPE,
        "nonce": secrets.token_urlsafe(16),
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_oauth_state(state: str | None) -> str:
    """Return the user id embedded in an OAuth state value.

    Raises:
        InvalidStateError: If the state is empty, malformed, expired,
            has the wrong signature or is not an OAuth state token.
    """
    if not state:
        raise InvalidStateError("Missing OAuth state")

    settings = get_settings()
    try:
        payload = jwt.decode(
            state,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as exc:
        logger.warning("OAuth state rejected: %s", exc)
        raise InvalidStateError("OAuth state could not be decoded") from exc

    if payload.get("type") != OAUTH_STATE_TOKEN_TYPE:
        raise InvalidStateError("OAuth state has the wrong token type")
    user_id = payload.get("sub")
    if not user_id:
        raise InvalidStateError("OAuth state carries no user identity")
    return str(user_id)
