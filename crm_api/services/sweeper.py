# crm_api/services/sweeper.py
import asyncio
import logging
import threading
from datetime import datetime
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from automation.clock import ensure_utc, utcnow
from automation.conf import SWEEP_BATCH_SIZE, SWEEP_INTERVAL_SECONDS
from automation.rules.models import (
    TENANT_ENTITY_TYPE,
    CrmEvent,
    EventType,
    NoReplyAfterDaysTrigger,
    ScheduledTrigger,
)
from automation.workflows.interpreter import process_due_enrollments
from crm_api.db.store import SqlCrmStore
from crm_api.services.events import dispatch_with_cascade

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "automation-sweep"
ENTITY_PAGE_SIZE = 500

# Global scheduler
_scheduler: Optional[BackgroundScheduler] = None
_scheduler_lock = threading.Lock()
_stop_event = threading.Event()


def _tick(tenant_id: str, entity_id: str, entity_type: str, now: datetime) -> CrmEvent:
    return CrmEvent(
        type=EventType.SCHEDULE_TICK.value,
        tenant_id=tenant_id,
        entity_id=entity_id,
        entity_type=entity_type,
        occurred_at=now,
        dedupe_key=f"schedule_tick:{entity_id}:{now.isoformat()}",
        source="sweeper",
    )


def _needs_entity_ticks(store: SqlCrmStore, tenant_id: str) -> bool:
    for rule in store.list_active_rules(tenant_id):
        if isinstance(rule.trigger, NoReplyAfterDaysTrigger):
            return True
        if isinstance(rule.trigger, ScheduledTrigger) and rule.trigger.scope == "entity":
            return True
    return False


async def _sweep(store: SqlCrmStore, now: datetime, stop_event: threading.Event) -> Dict[str, int]:
    stats = await process_due_enrollments(store, now=now, limit=SWEEP_BATCH_SIZE, stop_event=stop_event)
    stats["ticks"] = 0

    tenants = await asyncio.to_thread(store.list_tenants_with_active_rules)
    for tenant_id in tenants:
        if stop_event.is_set():
            break
        await dispatch_with_cascade(_tick(tenant_id, tenant_id, TENANT_ENTITY_TYPE, now), store)
        stats["ticks"] += 1

        if not await asyncio.to_thread(_needs_entity_ticks, store, tenant_id):
            continue
        after_id = 0
        while not stop_event.is_set():
            page = await asyncio.to_thread(store.list_entity_ids, tenant_id, after_id, ENTITY_PAGE_SIZE)
            if not page:
                break
            for row_id, entity_id, entity_type in page:
                if stop_event.is_set():
                    break
                await dispatch_with_cascade(_tick(tenant_id, entity_id, entity_type, now), store)
                stats["ticks"] += 1
                after_id = row_id

    return stats


def run_sweep(now: Optional[datetime] = None, stop_event: Optional[threading.Event] = None) -> Dict[str, int]:
    """
    One sweep: advance due enrollments, then emit schedule ticks for every
    tenant with active rules.

    Each enrollment and each tick is a unit of work; a stop request is
    honoured between units, and the next sweep picks up where this one left.
    """
    now = ensure_utc(now or utcnow())
    stop_event = stop_event or _stop_event
    try:
        stats = asyncio.run(_sweep(SqlCrmStore(), now, stop_event))
    except Exception as e:
        logger.error("Sweep failed: %s", e, exc_info=True)
        return {"processed": 0, "errors": 1, "ticks": 0}
    if stats["ticks"] or stats["processed"] or stats["errors"]:
        logger.info(
            "Sweep done: %d enrollment(s) advanced, %d error(s), %d tick(s)",
            stats["processed"],
            stats["errors"],
            stats["ticks"],
        )
    return stats


def get_scheduler() -> BackgroundScheduler:
    """Get or create the background scheduler."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = BackgroundScheduler(timezone="UTC")
        return _scheduler


def start_sweeper(interval_seconds: int = SWEEP_INTERVAL_SECONDS) -> None:
    """Start the periodic sweep job."""
    scheduler = get_scheduler()
    if scheduler.running:
        logger.warning("Sweeper already running")
        return

    _stop_event.clear()
    scheduler.add_job(
        func=run_sweep,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Sweeper started (every %ds)", interval_seconds)


def stop_sweeper() -> None:
    """Signal the running sweep to stop and shut the scheduler down."""
    global _scheduler
    _stop_event.set()
    with _scheduler_lock:
        if _scheduler is not None and _scheduler.running:
            _scheduler.shutdown()
            logger.info("Sweeper stopped")
        _scheduler = None
