# crm_api/schemas/scores.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LeadScoreChange(BaseModel):
    """Score movement caused by one event or manual adjustment."""

    entity_id: str
    score: int
    tier: str = Field(..., description="cold, warm, hot or sales_ready")
    delta: int
    previous_score: int


class LeadScoreResponse(BaseModel):
    entity_id: str
    score: int = Field(..., description="Current score after inactivity decay")
    tier: str
    last_activity_at: Optional[datetime] = None
    updated_at: datetime


class LeadScoreListResponse(BaseModel):
    scores: List[LeadScoreResponse]
    total: int


class ScoreBucket(BaseModel):
    range: str
    count: int


class ScoreStatsResponse(BaseModel):
    total: int
    cold: int
    warm: int
    hot: int
    sales_ready: int
    avg_score: int
    distribution: List[ScoreBucket]


class ScoreAdjustRequest(BaseModel):
    """Manual score change; negative deltas lower the score (never below zero)."""

    model_config = ConfigDict(populate_by_name=True)

    entity_id: str = Field(..., alias="entityId", min_length=1)
    delta: int
