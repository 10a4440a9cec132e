# crm_api/services/events.py
import asyncio
import logging
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_

from automation.conf import MAX_EVENT_CASCADE_DEPTH
from automation.rules.conditions import to_number
from automation.rules.dispatcher import DispatchReport, dispatch_event
from automation.rules.models import CrmEvent, EventType
from automation.workflows.interpreter import resume_enrollments_for_event
from crm_api.db.engine import get_session
from crm_api.db.models import Event
from crm_api.db.store import SqlCrmStore
from crm_api.services.scores import apply_score_event

logger = logging.getLogger(__name__)

SUPPRESSING_EVENTS = {
    "email_bounced": "hard_bounce",
    "email_unsubscribed": "unsubscribed",
    "email_complained": "spam_complaint",
}


def suppression_reason(event: CrmEvent) -> Optional[str]:
    """Reason the event's address must no longer be emailed, if any."""
    reason = SUPPRESSING_EVENTS.get(event.type)
    if reason == "hard_bounce":
        bounce_type = str(event.payload.get("bounce_type") or event.payload.get("bounceType") or "").lower()
        if bounce_type != "hard":
            return None
    return reason


def _suppress_for(store: SqlCrmStore, event: CrmEvent) -> None:
    reason = suppression_reason(event)
    if reason is None:
        return
    email = event.payload.get("to") or event.payload.get("email")
    if not email:
        entity = store.get_entity(event.tenant_id, event.entity_id)
        email = entity.get("email") if entity else None
    if not email:
        logger.warning("%s for %s carries no address to suppress", event.type, event.entity_id)
        return
    store.suppress(event.tenant_id, email, reason)


async def dispatch_with_cascade(event: CrmEvent, store: SqlCrmStore) -> Tuple[List[DispatchReport], List[str]]:
    """
    Dispatch ``event`` and then every event its actions emit, breadth first.

    Emitted events are recorded (deduplicated) before being dispatched in turn,
    at most ``MAX_EVENT_CASCADE_DEPTH`` levels deep. Enrollments waiting on any
    of these events are released as they are handled.

    Returns:
        (dispatch reports in handling order, ids of resumed enrollments)
    """
    reports: List[DispatchReport] = []
    resumed: List[str] = []
    queue = deque([(event, 0)])

    while queue:
        current, depth = queue.popleft()
        report = await dispatch_event(current, store)
        reports.append(report)
        released = await resume_enrollments_for_event(store, current)
        resumed.extend(e.enrollment_id for e in released)

        for emitted in report.emitted_events:
            if depth + 1 > MAX_EVENT_CASCADE_DEPTH:
                logger.warning(
                    "Cascade depth %d reached, not dispatching %s for %s",
                    MAX_EVENT_CASCADE_DEPTH,
                    emitted.type,
                    emitted.entity_id,
                )
                continue
            if not await asyncio.to_thread(store.record_event, emitted):
                continue
            queue.append((emitted, depth + 1))

    return reports, resumed


def _with_previous_deal_value(store: SqlCrmStore, event: CrmEvent) -> CrmEvent:
    """Fill in the stored deal value as the previous one when the payload omits it."""
    if event.type != EventType.DEAL_VALUE_CHANGED.value or event.previous_deal_value is not None:
        return event
    entity = store.get_entity(event.tenant_id, event.entity_id)
    stored = to_number(entity.get("value")) if entity else None
    if stored is None:
        return event
    return event.model_copy(update={"payload": {**event.payload, "previous_deal_value": stored}})


def ingest_event(event: CrmEvent) -> Dict[str, Any]:
    """
    Record, apply and dispatch one inbound CRM event.

    A duplicate (same tenant and dedupe key) is acknowledged without any
    side effects.
    """
    store = SqlCrmStore()
    event = _with_previous_deal_value(store, event)
    if not store.record_event(event):
        logger.info("Duplicate event %s (%s) ignored", event.event_id, event.key)
        return {
            "event_id": event.event_id,
            "duplicate": True,
            "reports": [],
            "resumed_enrollments": [],
            "lead_score": None,
        }

    store.apply_engagement(event)
    _suppress_for(store, event)
    lead_score = apply_score_event(event)

    reports, resumed = asyncio.run(dispatch_with_cascade(event, store))
    first = reports[0]
    logger.info(
        "Event %s (%s) for %s: %d matched, %d cascaded event(s), %d enrollment(s) resumed",
        event.event_id,
        event.type,
        event.entity_id,
        first.matched,
        len(reports) - 1,
        len(resumed),
    )
    return {
        "event_id": event.event_id,
        "duplicate": False,
        "reports": reports,
        "resumed_enrollments": resumed,
        "lead_score": lead_score,
    }


def list_events(
    tenant_id: str,
    q: Optional[str] = None,
    source: Optional[str] = None,
    event_types: Optional[List[str]] = None,
    entity_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Event], int]:
    """Event log, newest first. ``q`` matches part of the entity id or event type."""
    session = get_session()
    try:
        query = session.query(Event).filter(Event.tenant_id == tenant_id)
        if source:
            query = query.filter(Event.source == source)
        if event_types:
            query = query.filter(Event.type.in_(event_types))
        if entity_id:
            query = query.filter(Event.entity_id == entity_id)
        if q:
            query = query.filter(or_(Event.entity_id.ilike(f"%{q}%"), Event.type.ilike(f"%{q}%")))
        total = query.count()
        events = query.order_by(Event.occurred_at.desc(), Event.id.desc()).limit(limit).offset(offset).all()
        return events, total
    finally:
        session.close()
