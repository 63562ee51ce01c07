"""REST API endpoints for the HubSpot connection and deal sync.

Error taxonomy to HTTP:
- not connected / reconnect required: 200 with ``connected: false`` and the
  report status, so the UI can tell them apart from failures
- InvalidStateError, AuthorizationError: 400
- TransientRemoteError (retries exhausted), RemoteRequestError: 502
- ConfigurationError or services missing from app.state: 503
"""

from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.dealpulse.api.deps import get_app_service, get_current_user_id
from src.dealpulse.deals.schemas import SyncReport
from src.dealpulse.errors import (
    AuthorizationError,
    ConfigurationError,
    InvalidStateError,
    RemoteRequestError,
    TransientRemoteError,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/crm", tags=["crm"])

SYNC_FAILED_DETAIL = "sync failed - try again"


# ── Request / Response Schemas ───────────────────────────────────────────────


class AuthorizeResponse(BaseModel):
    auth_url: str


class CompleteAuthorizationRequest(BaseModel):
    """Callback parameters forwarded by the frontend."""

    code: str
    state: str


class CompleteAuthorizationResponse(BaseModel):
    connected: bool = True
    scope: str | None = None
    expires_at: datetime


class DisconnectResponse(BaseModel):
    disconnected: bool


class StatusResponse(BaseModel):
    """Connection status with camelCase keys for the dashboard."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    connected: bool
    expired: bool = False
    last_sync: datetime | None = None
    scope: str | None = None


# ── Helpers ──────────────────────────────────────────────────────────────────


def _get_token_manager(request: Request):
    return get_app_service(request, "token_manager", "CRM connection")


def _get_sync_pipeline(request: Request):
    return get_app_service(request, "sync_pipeline", "CRM sync")


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/authorize", response_model=AuthorizeResponse)
async def start_authorization(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> AuthorizeResponse:
    """Return the HubSpot consent URL for the current user."""
    manager = _get_token_manager(request)
    try:
        auth_url = manager.start_authorization(user_id)
    except ConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.message,
        )
    return AuthorizeResponse(auth_url=auth_url)


@router.post("/authorize/complete", response_model=CompleteAuthorizationResponse)
async def complete_authorization(
    body: CompleteAuthorizationRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> CompleteAuthorizationResponse:
    """Exchange the callback code once the state matches the caller."""
    manager = _get_token_manager(request)
    try:
        credential = await manager.complete_authorization(body.code, body.state, user_id)
    except InvalidStateError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except AuthorizationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except TransientRemoteError as exc:
        logger.error("crm.authorization_failed", user_id=user_id, error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="authorization failed - try again",
        )
    return CompleteAuthorizationResponse(
        scope=credential.scope,
        expires_at=credential.expires_at,
    )


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> DisconnectResponse:
    """Revoke and delete the current user's CRM credential."""
    manager = _get_token_manager(request)
    removed = await manager.disconnect(user_id)
    return DisconnectResponse(disconnected=removed)


@router.post("/sync", response_model=SyncReport)
async def sync(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> SyncReport:
    """Run one sync pass for the current user."""
    pipeline = _get_sync_pipeline(request)
    try:
        return await pipeline.sync_deals(user_id)
    except (TransientRemoteError, RemoteRequestError) as exc:
        logger.error("sync.failed", user_id=user_id, error=exc.message)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=SYNC_FAILED_DETAIL,
        )


@router.get("/status", response_model=StatusResponse)
async def connection_status(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> StatusResponse:
    """Report whether the current user is connected and when they last synced."""
    manager = _get_token_manager(request)
    current = await manager.status(user_id)
    return StatusResponse(
        connected=current.connected,
        expired=current.expired,
        last_sync=current.last_sync,
        scope=current.scope,
    )
