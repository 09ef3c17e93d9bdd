"""Reputation endpoints.

GET   /api/v1/reputation                       -- leaderboard, top 100 by score
GET   /api/v1/reputation/{user_id}             -- one user's record
POST  /api/v1/reputation/recompute             -- sweep every user
POST  /api/v1/reputation/{user_id}/recompute   -- recompute one user
POST  /api/v1/reputation/{user_id}/override    -- admin manual override
PATCH /api/v1/reputation/{user_id}/visibility  -- show/hide the badge
"""

from fastapi import APIRouter, HTTPException, Query

from nexusmod.dependencies import CurrentAdmin, Scorer
from nexusmod.middleware.rate_limiter import ReadRateLimit, WriteRateLimit
from nexusmod.schemas.reputation import (
    OverrideRequest,
    RecomputeAllResponse,
    RecomputeResponse,
    ReputationResponse,
    VisibilityRequest,
)
from nexusmod.services.reputation import ReputationNotFoundError

router = APIRouter(prefix="/api/v1/reputation", tags=["reputation"])


@router.get("", response_model=list[ReputationResponse])
async def get_leaderboard(
    admin: CurrentAdmin,
    scorer: Scorer,
    _rate: ReadRateLimit,
    limit: int = Query(default=100, ge=1, le=100),
) -> list[ReputationResponse]:
    rows = await scorer.leaderboard(limit)
    return [ReputationResponse.model_validate(row) for row in rows]


@router.post("/recompute", response_model=RecomputeAllResponse)
async def recompute_all_reputations(
    admin: CurrentAdmin,
    scorer: Scorer,
    _rate: WriteRateLimit,
) -> RecomputeAllResponse:
    result = await scorer.recompute_all()
    return RecomputeAllResponse(**result)


@router.get("/{user_id}", response_model=ReputationResponse)
async def get_user_reputation(
    user_id: str,
    admin: CurrentAdmin,
    scorer: Scorer,
    _rate: ReadRateLimit,
) -> ReputationResponse:
    rep = await scorer.get(user_id)
    if rep is None:
        raise HTTPException(status_code=404, detail="Reputation not found")
    return ReputationResponse.model_validate(rep)


@router.post("/{user_id}/recompute", response_model=RecomputeResponse)
async def recompute_user_reputation(
    user_id: str,
    admin: CurrentAdmin,
    scorer: Scorer,
    _rate: WriteRateLimit,
) -> RecomputeResponse:
    score = await scorer.recompute(user_id)
    return RecomputeResponse(user_id=user_id, score=score)


@router.post("/{user_id}/override", response_model=ReputationResponse)
async def override_user_reputation(
    user_id: str,
    body: OverrideRequest,
    admin: CurrentAdmin,
    scorer: Scorer,
    _rate: WriteRateLimit,
) -> ReputationResponse:
    """Overwrite a user's score. Lasts until the next recompute."""
    try:
        rep = await scorer.manual_override(user_id, body.score, body.override_by, body.reason)
    except ReputationNotFoundError:
        raise HTTPException(status_code=404, detail="Reputation not found")
    return ReputationResponse.model_validate(rep)


@router.patch("/{user_id}/visibility", response_model=ReputationResponse)
async def set_reputation_visibility(
    user_id: str,
    body: VisibilityRequest,
    admin: CurrentAdmin,
    scorer: Scorer,
    _rate: WriteRateLimit,
) -> ReputationResponse:
    try:
        rep = await scorer.set_visibility(user_id, body.visibility_public)
    except ReputationNotFoundError:
        raise HTTPException(status_code=404, detail="Reputation not found")
    return ReputationResponse.model_validate(rep)
