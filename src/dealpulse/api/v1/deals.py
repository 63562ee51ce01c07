"""REST API endpoints for reading synced deals."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from src.dealpulse.api.deps import get_app_service, get_current_user_id
from src.dealpulse.deals.schemas import LocalDeal

router = APIRouter(prefix="/deals", tags=["deals"])


def _get_deal_repository(request: Request):
    return get_app_service(request, "deal_repository", "Deal store")


@router.get("", response_model=list[LocalDeal])
async def list_deals(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> list[LocalDeal]:
    """List the current user's synced deals."""
    return await _get_deal_repository(request).list_deals(user_id)


@router.get("/{remote_id}", response_model=LocalDeal)
async def get_deal(
    remote_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> LocalDeal:
    """Get one synced deal by its HubSpot id."""
    deal = await _get_deal_repository(request).get_deal(user_id, remote_id)
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {remote_id}",
        )
    return deal
