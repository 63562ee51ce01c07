"""REST API endpoints for risk scoring and the per-user risk policy."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.dealpulse.api.deps import get_app_service, get_current_user_id
from src.dealpulse.deals.risk import score_deal
from src.dealpulse.deals.schemas import RiskPolicy, RiskResult, ScorableDeal

router = APIRouter(prefix="/risk", tags=["risk"])

WEIGHT_SUM_TOLERANCE = 0.01


class ScoreRequest(BaseModel):
    """A deal to score, optionally against an ad-hoc policy."""

    deal: ScorableDeal
    policy: RiskPolicy | None = None


class RescoreResponse(BaseModel):
    rescored: int


def _get_policy_repository(request: Request):
    return get_app_service(request, "risk_policy_repository", "Risk policy store")


@router.post("/score", response_model=RiskResult)
async def score(
    body: ScoreRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> RiskResult:
    """Score one deal. Uses the caller's stored policy unless one is given."""
    policy = body.policy
    if policy is None:
        policy = await _get_policy_repository(request).get_or_create(user_id)
    return score_deal(body.deal, policy)


@router.get("/policy", response_model=RiskPolicy)
async def get_policy(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> RiskPolicy:
    """Return the caller's policy, creating the defaults on first read."""
    return await _get_policy_repository(request).get_or_create(user_id)


@router.put("/policy", response_model=RiskPolicy)
async def update_policy(
    body: RiskPolicy,
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> RiskPolicy:
    """Replace the caller's policy. The four weights must sum to 1.0."""
    if abs(body.weights_total - 1.0) > WEIGHT_SUM_TOLERANCE:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Risk weights must sum to 1.0 (got {body.weights_total:.2f})",
        )
    return await _get_policy_repository(request).save(user_id, body)


@router.post("/rescore", response_model=RescoreResponse)
async def rescore(
    request: Request,
    user_id: str = Depends(get_current_user_id),
) -> RescoreResponse:
    """Recompute risk for all stored deals with the current policy."""
    pipeline = get_app_service(request, "sync_pipeline", "CRM sync")
    count = await pipeline.rescore_deals(user_id)
    return RescoreResponse(rescored=count)
