# crm_api/routers/scores.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from automation.scoring import TIERS
from crm_api.auth import get_tenant_id, verify_api_key
from crm_api.schemas.scores import (
    LeadScoreChange,
    LeadScoreListResponse,
    LeadScoreResponse,
    ScoreAdjustRequest,
    ScoreStatsResponse,
)
from crm_api.services.scores import adjust_lead_score, get_lead_score, list_lead_scores, score_stats

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.get("/scores", response_model=LeadScoreListResponse)
def list_scores_endpoint(
    tier: Optional[str] = Query(None, description="cold, warm, hot or sales_ready"),
    q: Optional[str] = Query(None, description="Part of an entity id"),
    limit: int = Query(500, ge=1, le=1000),
    tenant_id: str = Depends(get_tenant_id),
):
    """Lead scores after decay, highest first."""
    if tier and tier not in TIERS:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown tier '{tier}'")
    scores = list_lead_scores(tenant_id, tier=tier, q=q, limit=limit)
    return LeadScoreListResponse(scores=[LeadScoreResponse(**s) for s in scores], total=len(scores))


@router.get("/scores/stats", response_model=ScoreStatsResponse)
def score_stats_endpoint(tenant_id: str = Depends(get_tenant_id)):
    return ScoreStatsResponse(**score_stats(tenant_id))


@router.post("/scores/adjust", response_model=LeadScoreChange)
def adjust_score_endpoint(request: ScoreAdjustRequest, tenant_id: str = Depends(get_tenant_id)):
    """Manually raise or lower a lead's score."""
    return LeadScoreChange(**adjust_lead_score(tenant_id, request.entity_id, request.delta))


@router.get("/scores/{entity_id}", response_model=LeadScoreResponse)
def get_score_endpoint(entity_id: str, tenant_id: str = Depends(get_tenant_id)):
    score = get_lead_score(tenant_id, entity_id)
    if score is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No lead score for entity")
    return LeadScoreResponse(**score)
