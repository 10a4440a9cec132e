# automation/workflows/interpreter.py
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

from automation.clock import ensure_utc, utcnow
from automation.conf import MAX_IMMEDIATE_STEPS, WAIT_EVENT_TIMEOUT_DAYS
from automation.effects import apply_update, deliver_notification, render_placeholders
from automation.exceptions import AutomationError, WorkflowNotFoundError, WorkflowValidationError
from automation.rules.models import CrmEvent, EventType
from automation.store import CrmStore
from automation.workflows.branches import evaluate_branch
from automation.workflows.models import (
    Enrollment,
    EnrollmentStatus,
    NodeType,
    StopConfig,
    WaitConfig,
    WorkflowDefinition,
    WorkflowNode,
    WorkflowStatus,
    ensure_executable,
)

logger = logging.getLogger(__name__)

_UNIT_DELTAS = {
    "hours": lambda n: timedelta(hours=n),
    "days": lambda n: timedelta(days=n),
    "weeks": lambda n: timedelta(weeks=n),
}


class EnrollmentLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = self.extra or {}
        enrollment_id = str(extra.get("enrollment_id", "?"))[:8]
        entity_id = extra.get("entity_id", "?")
        return f"[enrollment={enrollment_id}] [entity={entity_id}] {msg}", kwargs


def _log_for(enrollment: Enrollment) -> EnrollmentLoggerAdapter:
    return EnrollmentLoggerAdapter(
        logger, {"enrollment_id": enrollment.enrollment_id, "entity_id": enrollment.entity_id}
    )


def _record(enrollment: Enrollment, node: WorkflowNode, now: datetime, **detail: Any) -> None:
    enrollment.history.append(
        {"node_id": node.node_id, "type": node.type.value, "at": now.isoformat(), **detail}
    )


def _finish(enrollment: Enrollment, status: EnrollmentStatus, outcome: str, now: datetime) -> None:
    enrollment.status = status
    enrollment.outcome = outcome
    enrollment.completed_at = now
    enrollment.last_transition_at = now
    enrollment.next_check_at = None
    enrollment.wait_expires_at = None


def _park(enrollment: Enrollment, node: WorkflowNode, now: datetime) -> None:
    cfg: WaitConfig = node.settings()
    enrollment.current_node_id = node.node_id
    enrollment.node_entered_at = now
    enrollment.last_transition_at = now
    if cfg.wait_type == "duration":
        enrollment.wait_expires_at = None
        enrollment.next_check_at = now + _UNIT_DELTAS[cfg.unit](cfg.duration)
    else:
        expires = now + timedelta(days=cfg.timeout_days or WAIT_EVENT_TIMEOUT_DAYS)
        enrollment.wait_expires_at = expires
        enrollment.next_check_at = expires


async def _resolve_wait(
    store: CrmStore,
    enrollment: Enrollment,
    node: WorkflowNode,
    now: datetime,
    event: Optional[CrmEvent],
) -> Optional[str]:
    """Return the edge handle to leave the wait by, or None to keep waiting."""
    cfg: WaitConfig = node.settings()
    entered = ensure_utc(enrollment.node_entered_at)

    if cfg.wait_type == "duration":
        if now >= entered + _UNIT_DELTAS[cfg.unit](cfg.duration):
            return "default"
        return None

    if event is not None and event.type == cfg.event_type:
        return "default"

    seen = await asyncio.to_thread(
        store.count_events, enrollment.tenant_id, enrollment.entity_id, cfg.event_type, entered
    )
    if seen > 0:
        return "default"

    expires = enrollment.wait_expires_at or entered + timedelta(days=cfg.timeout_days or WAIT_EVENT_TIMEOUT_DAYS)
    if now >= ensure_utc(expires):
        return "timeout"
    return None


async def _execute_node(
    store: CrmStore,
    enrollment: Enrollment,
    node: WorkflowNode,
    now: datetime,
) -> Tuple[str, Dict[str, Any]]:
    """Apply an immediate node's side effect. Returns (edge handle, history detail)."""
    tenant_id, entity_id = enrollment.tenant_id, enrollment.entity_id
    log = _log_for(enrollment)
    cfg = node.settings()

    entity = await asyncio.to_thread(store.get_entity, tenant_id, entity_id)
    snapshot = {**enrollment.state, **(entity or {})}

    if node.type == NodeType.SEND:
        email = enrollment.state.get("email") or snapshot.get("email")
        if not email:
            log.warning("No email address, skipping send node %s", node.node_id)
            return "default", {"skipped": "no_email"}

        if await asyncio.to_thread(store.is_suppressed, tenant_id, email):
            log.info("Send to %s suppressed", email)
            handle = "suppressed" if node.edges.get("suppressed") else "default"
            return handle, {"skipped": "suppressed"}

        message = {
            "to": email,
            "template_id": cfg.template_id,
            "subject": render_placeholders(cfg.subject, snapshot),
            "body": render_placeholders(cfg.body, snapshot),
            "workflow_id": enrollment.workflow_id,
            "enrollment_id": enrollment.enrollment_id,
            "node_id": node.node_id,
        }
        email_id = await asyncio.to_thread(store.send_email, tenant_id, entity_id, message)
        sent = CrmEvent(
            type=EventType.EMAIL_SENT.value,
            tenant_id=tenant_id,
            entity_id=entity_id,
            entity_type=enrollment.entity_type,
            payload={"to": email, "email_id": email_id, "enrollment_id": enrollment.enrollment_id},
            occurred_at=now,
            dedupe_key=f"{enrollment.enrollment_id}:{node.node_id}:{now.isoformat()}",
            source="workflow",
        )
        await asyncio.to_thread(store.record_event, sent)
        return "default", {"email_id": email_id}

    if node.type == NodeType.BRANCH:
        count = 0
        if cfg.condition_type == "event_window":
            since = now - timedelta(days=cfg.window_days)
            count = await asyncio.to_thread(store.count_events, tenant_id, entity_id, cfg.event_type, since)
        outcome = evaluate_branch(cfg, snapshot, count)
        return ("yes" if outcome else "no"), {"branch": "yes" if outcome else "no"}

    if node.type == NodeType.UPDATE:
        result = await asyncio.to_thread(
            apply_update,
            store,
            tenant_id,
            entity_id,
            cfg.update_type,
            field=cfg.field,
            value=cfg.value,
            tag=cfg.tag,
            delta=cfg.delta,
        )
        if cfg.update_type == "field":
            enrollment.state[cfg.field] = cfg.value
        return "default", result

    if node.type == NodeType.NOTIFY:
        notification = {
            "title": render_placeholders(cfg.title, snapshot),
            "message": render_placeholders(cfg.message, snapshot),
            "severity": cfg.severity,
            "entity_type": enrollment.entity_type,
            "entity_id": entity_id,
            "source_workflow_id": enrollment.workflow_id,
        }
        try:
            result = await asyncio.to_thread(deliver_notification, store, tenant_id, notification)
        except requests.RequestException as e:
            log.warning("Notification webhook failed: %s", e)
            return "default", {"webhook_error": str(e)}
        return "default", result

    if node.type == NodeType.ENROL:
        try:
            child, created = await start_enrollment(
                store,
                tenant_id,
                cfg.target_workflow_id,
                entity_id,
                entity_type=enrollment.entity_type,
                initial_state=dict(enrollment.state),
                parent_enrollment_id=enrollment.enrollment_id,
                advance=False,
                now=now,
            )
        except (WorkflowNotFoundError, WorkflowValidationError) as e:
            log.warning("Could not enrol into %s: %s", cfg.target_workflow_id, e)
            return "default", {"enrol_error": str(e)}
        return "default", {"child_enrollment_id": child.enrollment_id, "created": created}

    raise WorkflowValidationError(f"Node type {node.type.value} is not immediate")


async def _cascade(
    store: CrmStore,
    workflow: WorkflowDefinition,
    enrollment: Enrollment,
    node_id: Optional[str],
    now: datetime,
) -> None:
    """Walk immediate nodes from ``node_id`` until a wait, a stop, or a fault."""
    log = _log_for(enrollment)
    visited = set()
    steps = 0
    current_id = node_id

    while True:
        if current_id is None:
            _finish(enrollment, EnrollmentStatus.COMPLETED, "completed", now)
            log.info("Reached end of workflow %s", workflow.workflow_id)
            return
        if current_id in visited:
            _finish(enrollment, EnrollmentStatus.STOPPED, "cycle_detected", now)
            log.error("Cycle of immediate nodes at %s, stopping", current_id)
            return
        if steps >= MAX_IMMEDIATE_STEPS:
            _finish(enrollment, EnrollmentStatus.STOPPED, "step_limit", now)
            log.error("More than %d immediate nodes in one tick, stopping", MAX_IMMEDIATE_STEPS)
            return

        node = workflow.get_node(current_id)
        if node is None:
            _finish(enrollment, EnrollmentStatus.STOPPED, "missing_node", now)
            log.error("Node %s not found in workflow %s", current_id, workflow.workflow_id)
            return

        visited.add(current_id)
        steps += 1
        enrollment.current_node_id = current_id
        enrollment.node_entered_at = now
        enrollment.last_transition_at = now

        if node.type == NodeType.WAIT:
            _park(enrollment, node, now)
            _record(enrollment, node, now, parked_until=enrollment.next_check_at.isoformat())
            log.info("Waiting at %s until %s", node.node_id, enrollment.next_check_at)
            return

        if node.type == NodeType.STOP:
            cfg: StopConfig = node.settings()
            _record(enrollment, node, now, outcome=cfg.outcome)
            _finish(enrollment, EnrollmentStatus.COMPLETED, cfg.outcome, now)
            log.info("Stopped at %s with outcome %s", node.node_id, cfg.outcome)
            return

        try:
            handle, detail = await _execute_node(store, enrollment, node, now)
        except (AutomationError, ValueError) as e:
            _record(enrollment, node, now, error=str(e))
            _finish(enrollment, EnrollmentStatus.STOPPED, "node_failed", now)
            log.error("Node %s (%s) failed: %s", node.node_id, node.type.value, e)
            return
        except Exception as e:
            # Side effects of earlier nodes in this tick are already applied
            _record(enrollment, node, now, error=str(e))
            _finish(enrollment, EnrollmentStatus.STOPPED, "node_failed", now)
            log.error("Node %s (%s) raised: %s", node.node_id, node.type.value, e, exc_info=True)
            return

        _record(enrollment, node, now, handle=handle, **detail)
        current_id = node.edges.get(handle)


async def _save(store: CrmStore, enrollment: Enrollment) -> Enrollment:
    await asyncio.to_thread(store.save_enrollment, enrollment)
    return enrollment


async def advance_enrollment(
    store: CrmStore,
    enrollment: Enrollment,
    *,
    now: Optional[datetime] = None,
    event: Optional[CrmEvent] = None,
    workflow: Optional[WorkflowDefinition] = None,
) -> Enrollment:
    """
    Evaluate one tick for an enrollment.

    A parked wait is resolved first (elapsed duration, matching event, or
    expiry); then immediate nodes cascade until the next wait or stop. The
    enrollment is saved before returning.
    """
    now = ensure_utc(now or utcnow())
    if not enrollment.is_active:
        return enrollment

    log = _log_for(enrollment)
    if workflow is None:
        workflow = await asyncio.to_thread(store.get_workflow, enrollment.tenant_id, enrollment.workflow_id)
    if workflow is None:
        _finish(enrollment, EnrollmentStatus.STOPPED, "missing_workflow", now)
        log.error("Workflow %s no longer exists", enrollment.workflow_id)
        return await _save(store, enrollment)

    node = workflow.get_node(enrollment.current_node_id)
    if node is None:
        _finish(enrollment, EnrollmentStatus.STOPPED, "missing_node", now)
        log.error("Current node %s not found", enrollment.current_node_id)
        return await _save(store, enrollment)

    if node.type != NodeType.WAIT:
        await _cascade(store, workflow, enrollment, node.node_id, now)
        return await _save(store, enrollment)

    handle = await _resolve_wait(store, enrollment, node, now, event)
    if handle is None:
        return enrollment

    if handle == "timeout" and not node.edges.get("timeout"):
        _record(enrollment, node, now, handle="timeout")
        _finish(enrollment, EnrollmentStatus.STOPPED, "timed_out", now)
        log.info("Wait at %s timed out", node.node_id)
        return await _save(store, enrollment)

    _record(enrollment, node, now, handle=handle)
    enrollment.wait_expires_at = None
    await _cascade(store, workflow, enrollment, node.edges.get(handle), now)
    return await _save(store, enrollment)


async def start_enrollment(
    store: CrmStore,
    tenant_id: str,
    workflow_id: str,
    entity_id: str,
    *,
    entity_type: str = "contact",
    initial_state: Optional[Dict[str, Any]] = None,
    source_rule_id: Optional[str] = None,
    parent_enrollment_id: Optional[str] = None,
    advance: bool = True,
    now: Optional[datetime] = None,
) -> Tuple[Enrollment, bool]:
    """
    Enroll an entity at the workflow's entry node.

    Idempotent: an existing active or paused enrollment in the same workflow
    is returned with ``created=False``. With ``advance=False`` the enrollment
    is saved due immediately and left for the next sweep.

    Raises:
        WorkflowNotFoundError: unknown workflow for the tenant
        WorkflowValidationError: workflow not active or not executable
    """
    now = ensure_utc(now or utcnow())

    existing = await asyncio.to_thread(store.get_active_enrollment, tenant_id, workflow_id, entity_id)
    if existing is not None:
        logger.debug("Entity %s already enrolled in %s", entity_id, workflow_id)
        return existing, False

    workflow = await asyncio.to_thread(store.get_workflow, tenant_id, workflow_id)
    if workflow is None:
        raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
    if workflow.status != WorkflowStatus.ACTIVE:
        raise WorkflowValidationError(f"Workflow '{workflow.name}' is {workflow.status.value}, not active")
    ensure_executable(workflow)

    entity = await asyncio.to_thread(store.get_entity, tenant_id, entity_id)
    state: Dict[str, Any] = {}
    if entity and entity.get("email"):
        state["email"] = entity["email"]
    state.update(initial_state or {})

    enrollment = Enrollment(
        tenant_id=tenant_id,
        workflow_id=workflow_id,
        entity_id=entity_id,
        entity_type=entity_type,
        current_node_id=workflow.entry_node_id,
        enrolled_at=now,
        node_entered_at=now,
        next_check_at=now,
        last_transition_at=now,
        state=state,
        source_rule_id=source_rule_id,
        parent_enrollment_id=parent_enrollment_id,
    )
    logger.info("Enrolled %s in workflow %s (enrollment: %s)", entity_id, workflow_id, enrollment.enrollment_id)

    if not advance:
        return await _save(store, enrollment), True
    return await advance_enrollment(store, enrollment, now=now, workflow=workflow), True


async def resume_enrollments_for_event(store: CrmStore, event: CrmEvent) -> List[Enrollment]:
    """Release the entity's enrollments parked on an event-mode wait for ``event.type``."""
    enrollments = await asyncio.to_thread(store.list_active_enrollments, event.tenant_id, event.entity_id)
    released: List[Enrollment] = []

    for enrollment in enrollments:
        try:
            workflow = await asyncio.to_thread(store.get_workflow, enrollment.tenant_id, enrollment.workflow_id)
            node = workflow.get_node(enrollment.current_node_id) if workflow else None
            if node is None or node.type != NodeType.WAIT:
                continue
            cfg: WaitConfig = node.settings()
            if cfg.wait_type != "event" or cfg.event_type != event.type:
                continue
            released.append(await advance_enrollment(store, enrollment, event=event, workflow=workflow))
        except Exception as e:
            logger.error("Failed to resume enrollment %s: %s", enrollment.enrollment_id, e, exc_info=True)

    return released


async def process_due_enrollments(
    store: CrmStore,
    *,
    now: Optional[datetime] = None,
    limit: int = 200,
    stop_event: Optional[threading.Event] = None,
) -> Dict[str, int]:
    """Advance every active enrollment whose next check is due. Each enrollment is one unit of work."""
    now = ensure_utc(now or utcnow())
    due = await asyncio.to_thread(store.list_due_enrollments, now, limit)
    processed = errors = 0

    for enrollment in due:
        if stop_event is not None and stop_event.is_set():
            logger.info("Stop requested, leaving %d enrollment(s) for the next sweep", len(due) - processed - errors)
            break
        try:
            await advance_enrollment(store, enrollment, now=now)
            processed += 1
        except Exception as e:
            errors += 1
            logger.error("Error processing enrollment %s: %s", enrollment.enrollment_id, e, exc_info=True)

    if processed or errors:
        logger.info("Processed %d enrollments, %d errors", processed, errors)
    return {"processed": processed, "errors": errors}
