# automation/rules/dry_run.py
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from automation.clock import ensure_utc, utcnow
from automation.rules.conditions import evaluate, to_number
from automation.rules.models import (
    TENANT_ENTITY_TYPE,
    ActionConfig,
    AutomationRule,
    CreateTaskAction,
    DealValueThresholdTrigger,
    EnrollSequenceAction,
    MoveStageAction,
    NoReplyAfterDaysTrigger,
    ScheduledTrigger,
    SendNotificationAction,
    StageEnteredTrigger,
    TriggerConfig,
    UpdateFieldAction,
)
from automation.rules.triggers import as_datetime, describe_trigger
from automation.store import CrmStore

SAMPLE_SIZE = 25


class DryRunResult(BaseModel):
    """What a rule would affect right now. Nothing is executed or recorded."""

    rule_id: Optional[str] = None
    total_entities: int
    affected_count: int
    entity_ids: List[str] = Field(default_factory=list, description=f"Up to {SAMPLE_SIZE} matching ids")
    description: str


def describe_action(action: ActionConfig) -> str:
    if isinstance(action, MoveStageAction):
        return f"move it to '{action.to_stage}'"
    if isinstance(action, CreateTaskAction):
        return f"create a {action.priority}-priority task '{action.title}'"
    if isinstance(action, SendNotificationAction):
        return f"send a {action.severity} notification"
    if isinstance(action, EnrollSequenceAction):
        return f"enroll it in workflow {action.workflow_id}"
    if isinstance(action, UpdateFieldAction):
        if action.update_type == "tag":
            return f"tag it '{action.tag}'"
        if action.update_type == "score":
            return f"adjust its score by {action.delta:+d}"
        return f"set {action.field} to {action.value!r}"
    return action.type.value


def _currently_eligible(trigger: TriggerConfig, entity: Mapping[str, Any], now: datetime) -> bool:
    """State-based approximation of each trigger against the current entity population."""
    if isinstance(trigger, DealValueThresholdTrigger):
        value = to_number(entity.get("value"))
        return value is not None and value >= trigger.threshold

    if isinstance(trigger, NoReplyAfterDaysTrigger):
        last_outbound = as_datetime(entity.get("last_outbound_at"))
        if last_outbound is None:
            return False
        last_reply = as_datetime(entity.get("last_reply_at"))
        if last_reply is not None and last_reply >= last_outbound:
            return False
        return now - last_outbound >= timedelta(days=trigger.days)

    if isinstance(trigger, StageEnteredTrigger) and trigger.from_stage:
        return entity.get("stage") == trigger.from_stage

    return True


def dry_run(
    rule: AutomationRule,
    entities: Iterable[Mapping[str, Any]],
    now: Optional[datetime] = None,
) -> DryRunResult:
    now = ensure_utc(now or utcnow())
    if isinstance(rule.trigger, ScheduledTrigger) and rule.trigger.scope == "tenant":
        entities = [{"id": rule.tenant_id, "entity_type": TENANT_ENTITY_TYPE}]
    total = 0
    affected: List[str] = []
    for entity in entities:
        total += 1
        if _currently_eligible(rule.trigger, entity, now) and evaluate(rule.conditions, entity):
            affected.append(str(entity.get("id")))

    noun = "entity" if total == 1 else "entities"
    description = (
        f"When {describe_trigger(rule.trigger)}, {describe_action(rule.action)}. "
        f"{len(affected)} of {total} {noun} would currently be affected."
    )
    return DryRunResult(
        rule_id=rule.id,
        total_entities=total,
        affected_count=len(affected),
        entity_ids=affected[:SAMPLE_SIZE],
        description=description,
    )


async def simulate_rule(rule: AutomationRule, store: CrmStore, now: Optional[datetime] = None) -> DryRunResult:
    """Dry-run ``rule`` over the tenant's current entities."""
    entities = await asyncio.to_thread(store.list_entities, rule.tenant_id)
    return dry_run(rule, entities, now)
