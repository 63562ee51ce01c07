"""FastAPI dependencies for authentication and service lookup.

The end user is identified by a Bearer JWT whose ``sub`` claim is the user
id; issuing those tokens belongs to the application's own auth service.
Services are created in the lifespan hook and stored on app.state; a missing
service means the module failed to initialize and yields 503.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.dealpulse.core.security import verify_token


async def get_current_user_id(request: Request) -> str:
    """Extract and validate the current user id from the Bearer token.

    Raises:
        HTTPException(401): If no valid Bearer token is provided.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_token(auth_header[7:], token_type="access")
    return str(payload["sub"])


def get_app_service(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service
