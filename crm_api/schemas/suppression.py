# crm_api/schemas/suppression.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SuppressionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str = Field(..., min_length=3)
    reason: str = Field("manual", min_length=1)
    expires_at: Optional[datetime] = Field(None, alias="expiresAt", description="Omit for a permanent entry")


class SuppressionBulkRequest(BaseModel):
    emails: List[str] = Field(..., min_length=1)
    reason: str = Field("manual", min_length=1)


class SuppressionBulkResponse(BaseModel):
    added: int = Field(..., description="Addresses not listed before")


class SuppressionResponse(BaseModel):
    id: int
    email: str
    reason: str
    expires_at: Optional[datetime] = None
    created_at: datetime


class SuppressionListResponse(BaseModel):
    suppressions: List[SuppressionResponse]
    total: int
    limit: int
    offset: int
