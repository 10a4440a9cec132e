# crm_api/db/store.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from automation.clock import ensure_utc, utcnow
from automation.conf import (
    DOMAIN_THROTTLE_MAX,
    DOMAIN_THROTTLE_WINDOW_MINUTES,
    FREQUENCY_CAP_MAX,
    FREQUENCY_CAP_WINDOW_DAYS,
)
from automation.exceptions import ActionFailure, RuleValidationError
from automation.rules.conditions import to_number
from automation.rules.factory import create_rule, rule_to_payload
from automation.rules.models import (
    AutomationRule,
    CrmEvent,
    EventType,
    ExecutionStatus,
    RuleExecution,
    TriggerHistory,
)
from automation.scoring import decayed_score, score_tier
from automation.store import CrmStore, EntitySnapshot
from automation.workflows.models import Enrollment, EnrollmentStatus, WorkflowDefinition
from crm_api.db.engine import get_session
from crm_api.db.models import (
    Entity,
    Event,
    Execution,
    LeadScore,
    Notification,
    OutboundEmail,
    Rule,
    Suppression,
    Task,
    Workflow,
    WorkflowEnrollment,
)

logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


# ----------------------------------------------------------------------
# Row <-> model conversion
# ----------------------------------------------------------------------


def rule_from_row(row: Rule) -> AutomationRule:
    payload = {
        "name": row.name,
        "description": row.description,
        "status": row.status,
        "priority": row.priority,
        "triggerType": row.trigger_type,
        "triggerConfig": row.trigger_config,
        "actionType": row.action_type,
        "actionConfig": row.action_config,
        "conditions": row.conditions,
        "createdBy": row.created_by,
    }
    return create_rule(
        row.tenant_id,
        payload,
        id=row.id,
        version=row.version,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def apply_rule_to_row(rule: AutomationRule, row: Rule) -> Rule:
    payload = rule_to_payload(rule)
    row.tenant_id = rule.tenant_id
    row.name = rule.name
    row.description = rule.description
    row.status = rule.status.value
    row.priority = rule.priority
    row.trigger_type = payload["triggerType"]
    row.trigger_config = payload["triggerConfig"]
    row.action_type = payload["actionType"]
    row.action_config = payload["actionConfig"]
    row.conditions = payload["conditions"]
    row.created_by = rule.created_by
    row.version = rule.version
    return row


def execution_from_row(row: Execution) -> RuleExecution:
    return RuleExecution(
        id=row.id,
        tenant_id=row.tenant_id,
        rule_id=row.rule_id,
        rule_name=row.rule_name,
        event_id=row.event_id,
        event_type=row.event_type,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        status=ExecutionStatus(row.status),
        sequence=row.sequence,
        executed_at=_utc(row.executed_at),
        occurrence_at=_utc(row.occurrence_at),
        error=row.error,
        detail=row.detail or {},
    )


def workflow_from_row(row: Workflow) -> WorkflowDefinition:
    return WorkflowDefinition(
        workflow_id=row.workflow_id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        version=row.version,
        status=row.status,
        entry_node_id=row.entry_node_id,
        nodes=row.nodes or [],
    )


_ENROLLMENT_DATETIMES = (
    "enrolled_at",
    "node_entered_at",
    "next_check_at",
    "wait_expires_at",
    "last_transition_at",
    "completed_at",
)


def enrollment_from_row(row: WorkflowEnrollment) -> Enrollment:
    data = {
        "enrollment_id": row.enrollment_id,
        "tenant_id": row.tenant_id,
        "workflow_id": row.workflow_id,
        "entity_id": row.entity_id,
        "entity_type": row.entity_type,
        "current_node_id": row.current_node_id,
        "status": row.status,
        "outcome": row.outcome,
        "state": row.state or {},
        "history": row.history or [],
        "source_rule_id": row.source_rule_id,
        "parent_enrollment_id": row.parent_enrollment_id,
    }
    for name in _ENROLLMENT_DATETIMES:
        data[name] = _utc(getattr(row, name))
    return Enrollment(**data)


def entity_snapshot(row: Entity, now: Optional[datetime] = None, lead: Optional[LeadScore] = None) -> EntitySnapshot:
    """Core columns at top level, custom fields merged underneath and kept under ``fields``."""
    now = now or utcnow()
    fields = dict(row.fields or {})
    snapshot: Dict[str, Any] = dict(fields)
    stage_entered_at = _utc(row.stage_entered_at)
    lead_score = decayed_score(lead.score, _utc(lead.last_activity_at), now) if lead is not None else 0
    snapshot.update(
        {
            "id": row.entity_id,
            "entity_type": row.entity_type,
            "name": row.name,
            "email": row.email,
            "stage": row.stage,
            "value": row.value,
            "score": row.score,
            "tags": list(row.tags or []),
            "stage_entered_at": stage_entered_at,
            "last_outbound_at": _utc(row.last_outbound_at),
            "last_reply_at": _utc(row.last_reply_at),
            "lead_score": lead_score,
            "lead_tier": score_tier(lead_score),
            "fields": fields,
        }
    )
    if stage_entered_at is not None:
        snapshot["days_in_stage"] = (now - stage_entered_at).days
    return snapshot


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------


class SqlCrmStore(CrmStore):
    """CrmStore on the service database. Each call uses its own short-lived session."""

    # -- rules ---------------------------------------------------------

    def list_active_rules(self, tenant_id: str) -> List[AutomationRule]:
        session = get_session()
        try:
            rows = (
                session.query(Rule)
                .filter(Rule.tenant_id == tenant_id, Rule.status == "active")
                .order_by(Rule.created_at)
                .all()
            )
            rules = []
            for row in rows:
                try:
                    rules.append(rule_from_row(row))
                except RuleValidationError as e:
                    logger.error("Stored rule %s is invalid, ignoring: %s", row.id, e)
            return rules
        finally:
            session.close()

    def list_tenants_with_active_rules(self) -> List[str]:
        session = get_session()
        try:
            rows = session.query(Rule.tenant_id).filter(Rule.status == "active").distinct().all()
            return sorted(row[0] for row in rows)
        finally:
            session.close()

    def get_trigger_history(self, tenant_id: str, rule: AutomationRule, entity_id: str) -> TriggerHistory:
        session = get_session()
        try:
            base = session.query(Execution).filter(
                Execution.tenant_id == tenant_id,
                Execution.rule_id == rule.id,
                Execution.entity_id == entity_id,
            )
            last_success = (
                base.filter(Execution.status == ExecutionStatus.SUCCESS.value)
                .with_entities(func.max(Execution.executed_at))
                .scalar()
            )
            last_occurrence = base.with_entities(func.max(Execution.occurrence_at)).scalar()
            return TriggerHistory(
                last_executed_at=_utc(last_success),
                last_occurrence_at=_utc(last_occurrence),
                not_before=rule.created_at,
            )
        finally:
            session.close()

    def record_executions(self, executions: Sequence[RuleExecution]) -> None:
        session = get_session()
        try:
            for execution in sorted(executions, key=lambda e: e.sequence):
                session.add(
                    Execution(
                        id=execution.id,
                        tenant_id=execution.tenant_id,
                        rule_id=execution.rule_id,
                        rule_name=execution.rule_name,
                        event_id=execution.event_id,
                        event_type=execution.event_type,
                        entity_type=execution.entity_type,
                        entity_id=execution.entity_id,
                        status=execution.status.value,
                        sequence=execution.sequence,
                        occurrence_at=execution.occurrence_at,
                        error=execution.error,
                        detail=execution.model_dump(mode="json")["detail"],
                        executed_at=execution.executed_at,
                    )
                )
                # Flush one by one so log_id follows the dispatch order.
                session.flush()
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -- entities ------------------------------------------------------

    def _entity_row(self, session, tenant_id: str, entity_id: str) -> Entity:
        row = session.query(Entity).filter(Entity.tenant_id == tenant_id, Entity.entity_id == entity_id).first()
        if row is None:
            raise ActionFailure(f"Entity {entity_id} not found")
        return row

    def _lead_score_row(self, session, tenant_id: str, entity_id: str) -> Optional[LeadScore]:
        return (
            session.query(LeadScore)
            .filter(LeadScore.tenant_id == tenant_id, LeadScore.entity_id == entity_id)
            .first()
        )

    def get_entity(self, tenant_id: str, entity_id: str) -> Optional[EntitySnapshot]:
        session = get_session()
        try:
            row = session.query(Entity).filter(Entity.tenant_id == tenant_id, Entity.entity_id == entity_id).first()
            return entity_snapshot(row, lead=self._lead_score_row(session, tenant_id, entity_id)) if row else None
        finally:
            session.close()

    def list_entities(self, tenant_id: str, entity_type: Optional[str] = None) -> List[EntitySnapshot]:
        session = get_session()
        try:
            query = session.query(Entity).filter(Entity.tenant_id == tenant_id)
            if entity_type:
                query = query.filter(Entity.entity_type == entity_type)
            now = utcnow()
            leads = {lead.entity_id: lead for lead in session.query(LeadScore).filter(LeadScore.tenant_id == tenant_id)}
            return [entity_snapshot(row, now, leads.get(row.entity_id)) for row in query.order_by(Entity.id).all()]
        finally:
            session.close()

    def list_entity_ids(self, tenant_id: str, after_id: int = 0, limit: int = 500) -> List[tuple]:
        """(row id, entity_id, entity_type) pages for the sweeper."""
        session = get_session()
        try:
            rows = (
                session.query(Entity.id, Entity.entity_id, Entity.entity_type)
                .filter(Entity.tenant_id == tenant_id, Entity.id > after_id)
                .order_by(Entity.id)
                .limit(limit)
                .all()
            )
            return [tuple(row) for row in rows]
        finally:
            session.close()

    def set_stage(self, tenant_id: str, entity_id: str, stage: str) -> None:
        session = get_session()
        try:
            row = self._entity_row(session, tenant_id, entity_id)
            if row.stage != stage:
                row.stage = stage
                row.stage_entered_at = utcnow()
            session.commit()
        finally:
            session.close()

    def set_field(self, tenant_id: str, entity_id: str, field: str, value: Any) -> None:
        session = get_session()
        try:
            row = self._entity_row(session, tenant_id, entity_id)
            if field in ("name", "email", "stage", "value", "score"):
                setattr(row, field, value)
            else:
                # Reassign so the JSON column is flagged dirty
                row.fields = {**(row.fields or {}), field: value}
            session.commit()
        finally:
            session.close()

    def add_tag(self, tenant_id: str, entity_id: str, tag: str) -> bool:
        session = get_session()
        try:
            row = self._entity_row(session, tenant_id, entity_id)
            tags = list(row.tags or [])
            if tag in tags:
                return False
            row.tags = tags + [tag]
            session.commit()
            return True
        finally:
            session.close()

    def get_score(self, tenant_id: str, entity_id: str) -> int:
        session = get_session()
        try:
            return int(self._entity_row(session, tenant_id, entity_id).score or 0)
        finally:
            session.close()

    def set_score(self, tenant_id: str, entity_id: str, score: int) -> None:
        session = get_session()
        try:
            self._entity_row(session, tenant_id, entity_id).score = score
            session.commit()
        finally:
            session.close()

    def upsert_entity(self, tenant_id: str, entity_id: str, **values: Any) -> EntitySnapshot:
        """Create or update a CRM record (used by seeding, tests and the events endpoint)."""
        session = get_session()
        try:
            row = session.query(Entity).filter(Entity.tenant_id == tenant_id, Entity.entity_id == entity_id).first()
            if row is None:
                row = Entity(tenant_id=tenant_id, entity_id=entity_id, tags=[], fields={}, score=0)
                session.add(row)
            for key, value in values.items():
                if key == "fields":
                    row.fields = {**(row.fields or {}), **(value or {})}
                elif key == "stage" and value != row.stage:
                    row.stage = value
                    row.stage_entered_at = utcnow()
                else:
                    setattr(row, key, value)
            session.commit()
            return entity_snapshot(row, lead=self._lead_score_row(session, tenant_id, entity_id))
        finally:
            session.close()

    def apply_engagement(self, event: CrmEvent) -> None:
        """Keep the reply/outbound timestamps, stage and deal value in step with ingested events."""
        column = {
            EventType.EMAIL_REPLIED.value: "last_reply_at",
            EventType.EMAIL_SENT.value: "last_outbound_at",
        }.get(event.type)
        stage = event.to_stage if event.type == EventType.STAGE_CHANGED.value else None
        value = to_number(event.deal_value) if event.type == EventType.DEAL_VALUE_CHANGED.value else None
        if column is None and stage is None and value is None:
            return

        session = get_session()
        try:
            row = (
                session.query(Entity)
                .filter(Entity.tenant_id == event.tenant_id, Entity.entity_id == event.entity_id)
                .first()
            )
            if row is None:
                return
            if column is not None:
                current = _utc(getattr(row, column))
                if current is None or current < event.occurred_at:
                    setattr(row, column, event.occurred_at)
            if stage is not None and row.stage != stage:
                row.stage = stage
                row.stage_entered_at = event.occurred_at
            if value is not None:
                row.value = value
            session.commit()
        finally:
            session.close()

    # -- side effects --------------------------------------------------

    def create_task(self, tenant_id: str, entity_id: str, task: Dict[str, Any]) -> str:
        task_id = str(uuid.uuid4())
        due_at = task.get("due_at")
        if isinstance(due_at, str):
            due_at = datetime.fromisoformat(due_at)
        session = get_session()
        try:
            session.add(
                Task(
                    id=task_id,
                    tenant_id=tenant_id,
                    entity_id=entity_id,
                    entity_type=task.get("entity_type"),
                    title=task["title"],
                    description=task.get("description"),
                    priority=task.get("priority") or "medium",
                    due_at=due_at,
                    assignee_id=task.get("assignee_id"),
                    source_rule_id=task.get("source_rule_id"),
                )
            )
            session.commit()
            return task_id
        finally:
            session.close()

    def create_notification(self, tenant_id: str, notification: Dict[str, Any]) -> str:
        notification_id = str(uuid.uuid4())
        session = get_session()
        try:
            session.add(
                Notification(
                    id=notification_id,
                    tenant_id=tenant_id,
                    user_id=notification.get("user_id"),
                    title=notification["title"],
                    message=notification["message"],
                    severity=notification.get("severity") or "medium",
                    entity_type=notification.get("entity_type"),
                    entity_id=notification.get("entity_id"),
                    source_rule_id=notification.get("source_rule_id"),
                    source_workflow_id=notification.get("source_workflow_id"),
                )
            )
            session.commit()
            return notification_id
        finally:
            session.close()

    def send_email(self, tenant_id: str, entity_id: str, email: Dict[str, Any]) -> str:
        email_id = str(uuid.uuid4())
        session = get_session()
        try:
            session.add(
                OutboundEmail(
                    id=email_id,
                    tenant_id=tenant_id,
                    entity_id=entity_id,
                    to=email["to"],
                    subject=email.get("subject"),
                    body=email.get("body"),
                    template_id=email.get("template_id"),
                    workflow_id=email.get("workflow_id"),
                    enrollment_id=email.get("enrollment_id"),
                    node_id=email.get("node_id"),
                )
            )
            row = session.query(Entity).filter(Entity.tenant_id == tenant_id, Entity.entity_id == entity_id).first()
            if row is not None:
                row.last_outbound_at = utcnow()
            session.commit()
            return email_id
        finally:
            session.close()

    def check_suppression(self, tenant_id: str, email: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Reason a send to ``email`` must be blocked, or None.

        Listed addresses are blocked until their expiry (expired entries are
        removed). Unlisted addresses are still capped per address over
        ``FREQUENCY_CAP_WINDOW_DAYS`` and per domain over
        ``DOMAIN_THROTTLE_WINDOW_MINUTES``, counted from recorded email_sent events.
        """
        now = now or utcnow()
        address = email.strip().lower()
        session = get_session()
        try:
            row = (
                session.query(Suppression)
                .filter(Suppression.tenant_id == tenant_id, Suppression.email == address)
                .first()
            )
            if row is not None:
                expires_at = _utc(row.expires_at)
                if expires_at is None or expires_at > now:
                    return row.reason
                session.delete(row)
                session.commit()
                logger.info("Suppression of %s for tenant %s expired", address, tenant_id)

            cap_since = now - timedelta(days=FREQUENCY_CAP_WINDOW_DAYS)
            throttle_since = now - timedelta(minutes=DOMAIN_THROTTLE_WINDOW_MINUTES)
            sends = (
                session.query(Event.payload, Event.occurred_at)
                .filter(
                    Event.tenant_id == tenant_id,
                    Event.type == EventType.EMAIL_SENT.value,
                    Event.occurred_at >= min(cap_since, throttle_since),
                )
                .all()
            )
        finally:
            session.close()

        domain = address.rpartition("@")[2] if "@" in address else None
        to_address = to_domain = 0
        for payload, occurred_at in sends:
            recipient = str((payload or {}).get("to") or "").strip().lower()
            if not recipient:
                continue
            occurred_at = _utc(occurred_at)
            if recipient == address and occurred_at >= cap_since:
                to_address += 1
            if domain and recipient.rpartition("@")[2] == domain and occurred_at >= throttle_since:
                to_domain += 1
        if to_address >= FREQUENCY_CAP_MAX:
            return "frequency_cap"
        if to_domain >= DOMAIN_THROTTLE_MAX:
            return "domain_throttle"
        return None

    def is_suppressed(self, tenant_id: str, email: str) -> bool:
        reason = self.check_suppression(tenant_id, email)
        if reason is not None:
            logger.debug("Send to %s blocked (%s)", email, reason)
        return reason is not None

    def suppress(self, tenant_id: str, email: str, reason: str, expires_at: Optional[datetime] = None) -> bool:
        """Add or update a suppression entry. Returns True when the address was not listed before."""
        address = email.strip().lower()
        session = get_session()
        try:
            row = (
                session.query(Suppression)
                .filter(Suppression.tenant_id == tenant_id, Suppression.email == address)
                .first()
            )
            created = row is None
            if created:
                row = Suppression(tenant_id=tenant_id, email=address)
                session.add(row)
            row.reason = reason
            row.expires_at = expires_at
            session.commit()
            logger.info(
                "Suppressed %s for tenant %s (%s)%s",
                address,
                tenant_id,
                reason,
                f" until {expires_at.isoformat()}" if expires_at else "",
            )
            return created
        except IntegrityError:
            session.rollback()
            return False
        finally:
            session.close()

    # -- events --------------------------------------------------------

    def record_event(self, event: CrmEvent) -> bool:
        session = get_session()
        try:
            session.add(
                Event(
                    event_id=event.event_id,
                    tenant_id=event.tenant_id,
                    entity_id=event.entity_id,
                    entity_type=event.entity_type,
                    type=event.type,
                    payload=event.payload,
                    occurred_at=event.occurred_at,
                    dedupe_key=event.key,
                    source=event.source,
                )
            )
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            logger.debug("Duplicate event %s ignored", event.key)
            return False
        finally:
            session.close()

    def count_events(self, tenant_id: str, entity_id: str, event_type: str, since: datetime) -> int:
        session = get_session()
        try:
            return (
                session.query(func.count(Event.id))
                .filter(
                    Event.tenant_id == tenant_id,
                    Event.entity_id == entity_id,
                    Event.type == event_type,
                    Event.occurred_at >= since,
                )
                .scalar()
                or 0
            )
        finally:
            session.close()

    # -- workflows -----------------------------------------------------

    def get_workflow(self, tenant_id: str, workflow_id: str) -> Optional[WorkflowDefinition]:
        session = get_session()
        try:
            row = (
                session.query(Workflow)
                .filter(Workflow.tenant_id == tenant_id, Workflow.workflow_id == workflow_id)
                .first()
            )
            return workflow_from_row(row) if row else None
        finally:
            session.close()

    def get_active_enrollment(self, tenant_id: str, workflow_id: str, entity_id: str) -> Optional[Enrollment]:
        session = get_session()
        try:
            row = (
                session.query(WorkflowEnrollment)
                .filter(
                    WorkflowEnrollment.tenant_id == tenant_id,
                    WorkflowEnrollment.workflow_id == workflow_id,
                    WorkflowEnrollment.entity_id == entity_id,
                    WorkflowEnrollment.status.in_(
                        [EnrollmentStatus.ACTIVE.value, EnrollmentStatus.PAUSED.value]
                    ),
                )
                .first()
            )
            return enrollment_from_row(row) if row else None
        finally:
            session.close()

    def get_enrollment(self, tenant_id: str, enrollment_id: str) -> Optional[Enrollment]:
        session = get_session()
        try:
            row = session.get(WorkflowEnrollment, enrollment_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return enrollment_from_row(row)
        finally:
            session.close()

    def save_enrollment(self, enrollment: Enrollment) -> None:
        data = enrollment.model_dump(mode="json")
        session = get_session()
        try:
            row = session.get(WorkflowEnrollment, enrollment.enrollment_id)
            if row is None:
                row = WorkflowEnrollment(enrollment_id=enrollment.enrollment_id)
                session.add(row)
            row.tenant_id = enrollment.tenant_id
            row.workflow_id = enrollment.workflow_id
            row.entity_id = enrollment.entity_id
            row.entity_type = enrollment.entity_type
            row.current_node_id = enrollment.current_node_id
            row.status = enrollment.status.value
            row.outcome = enrollment.outcome
            row.state = data["state"]
            row.history = data["history"]
            row.source_rule_id = enrollment.source_rule_id
            row.parent_enrollment_id = enrollment.parent_enrollment_id
            for name in _ENROLLMENT_DATETIMES:
                setattr(row, name, getattr(enrollment, name))
            session.commit()
        finally:
            session.close()

    def list_due_enrollments(self, now: datetime, limit: int) -> List[Enrollment]:
        session = get_session()
        try:
            rows = (
                session.query(WorkflowEnrollment)
                .filter(
                    WorkflowEnrollment.status == EnrollmentStatus.ACTIVE.value,
                    WorkflowEnrollment.next_check_at.isnot(None),
                    WorkflowEnrollment.next_check_at <= now,
                )
                .order_by(WorkflowEnrollment.next_check_at)
                .limit(limit)
                .all()
            )
            return [enrollment_from_row(row) for row in rows]
        finally:
            session.close()

    def list_active_enrollments(self, tenant_id: str, entity_id: str) -> List[Enrollment]:
        session = get_session()
        try:
            rows = (
                session.query(WorkflowEnrollment)
                .filter(
                    WorkflowEnrollment.tenant_id == tenant_id,
                    WorkflowEnrollment.entity_id == entity_id,
                    WorkflowEnrollment.status == EnrollmentStatus.ACTIVE.value,
                )
                .all()
            )
            return [enrollment_from_row(row) for row in rows]
        finally:
            session.close()
