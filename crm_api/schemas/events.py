# crm_api/schemas/events.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from automation.rules.dispatcher import DispatchReport
from crm_api.schemas.scores import LeadScoreChange


class EventIngestRequest(BaseModel):
    """CRM event to dispatch; the tenant comes from the X-Tenant-Id header."""

    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(..., min_length=1, description="e.g. email_replied, stage_changed")
    entity_id: str = Field(..., alias="entityId", min_length=1)
    entity_type: str = Field("contact", alias="entityType")
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = Field(None, alias="occurredAt", description="Defaults to now")
    event_id: Optional[str] = Field(None, alias="eventId")
    dedupe_key: Optional[str] = Field(None, alias="dedupeKey")


class EventIngestResponse(BaseModel):
    event_id: str
    duplicate: bool = Field(False, description="True when the event was already ingested")
    reports: List[DispatchReport] = Field(default_factory=list, description="Original event first, then cascades")
    resumed_enrollments: List[str] = Field(default_factory=list)
    lead_score: Optional[LeadScoreChange] = Field(None, description="Set when the event moved the lead score")


class EntityUpsertRequest(BaseModel):
    """Create or update the CRM record automations act on."""

    model_config = ConfigDict(populate_by_name=True)

    entity_type: Optional[str] = Field(None, alias="entityType")
    name: Optional[str] = None
    email: Optional[str] = None
    stage: Optional[str] = None
    value: Optional[float] = None
    score: Optional[int] = None
    tags: Optional[List[str]] = None
    fields: Optional[Dict[str, Any]] = None


class EventLogEntry(BaseModel):
    event_id: str
    type: str
    entity_id: str
    entity_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    occurred_at: datetime


class EventListResponse(BaseModel):
    """Recorded events, newest first, with pagination."""

    events: List[EventLogEntry]
    total: int
    limit: int
    offset: int
