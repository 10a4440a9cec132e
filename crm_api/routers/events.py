# crm_api/routers/events.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import ValidationError

from automation.clock import ensure_utc
from automation.rules.models import CrmEvent
from crm_api.auth import get_tenant_id, verify_api_key
from crm_api.db.models import Event
from crm_api.db.store import SqlCrmStore
from crm_api.schemas.events import (
    EntityUpsertRequest,
    EventIngestRequest,
    EventIngestResponse,
    EventListResponse,
    EventLogEntry,
)
from crm_api.services.events import ingest_event, list_events

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.post("/events", response_model=EventIngestResponse, status_code=status.HTTP_202_ACCEPTED)
def ingest_event_endpoint(request: EventIngestRequest, tenant_id: str = Depends(get_tenant_id)):
    """Ingest a CRM event: dedupe, run matching rules (with cascades) and release waiting enrollments."""
    fields = request.model_dump(exclude_none=True)
    try:
        event = CrmEvent(tenant_id=tenant_id, source="api", **fields)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    try:
        return EventIngestResponse(**ingest_event(event))
    except Exception as e:
        logger.error("Error ingesting event %s: %s", event.event_id, e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Internal server error: {str(e)}"
        )


def _event_to_entry(event: Event) -> EventLogEntry:
    return EventLogEntry(
        event_id=event.event_id,
        type=event.type,
        entity_id=event.entity_id,
        entity_type=event.entity_type,
        payload=event.payload or {},
        source=event.source,
        occurred_at=ensure_utc(event.occurred_at),
    )


@router.get("/events", response_model=EventListResponse)
def list_events_endpoint(
    q: Optional[str] = Query(None, description="Part of an entity id or event type"),
    source: Optional[str] = Query(None, description="api, automation, workflow or sweeper"),
    event_type: Optional[List[str]] = Query(None, description="Repeat to match several types"),
    entity_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
):
    """Recorded events (ingested and cascaded), newest first."""
    events, total = list_events(
        tenant_id, q=q, source=source, event_types=event_type, entity_id=entity_id, limit=limit, offset=offset
    )
    return EventListResponse(events=[_event_to_entry(e) for e in events], total=total, limit=limit, offset=offset)


@router.put("/entities/{entity_id}")
def upsert_entity_endpoint(entity_id: str, request: EntityUpsertRequest, tenant_id: str = Depends(get_tenant_id)):
    """Create or update a CRM record automations can act on."""
    return SqlCrmStore().upsert_entity(tenant_id, entity_id, **request.model_dump(exclude_none=True))


@router.get("/entities/{entity_id}")
def get_entity_endpoint(entity_id: str, tenant_id: str = Depends(get_tenant_id)):
    entity = SqlCrmStore().get_entity(tenant_id, entity_id)
    if entity is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Entity not found")
    return entity
