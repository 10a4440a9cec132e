# automation/rules/dispatcher.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from automation.actions import ActionResult, ActionTarget, create_executor_from_model, execute_action
from automation.conf import PERSIST_SKIPPED_EXECUTIONS
from automation.rules.conditions import evaluate
from automation.rules.models import (
    AutomationRule,
    CrmEvent,
    EventType,
    ExecutionStatus,
    RuleExecution,
    ScheduledTrigger,
    TriggerHistory,
)
from automation.rules.triggers import matches, trigger_occurrence
from automation.store import CrmStore, EntitySnapshot

logger = logging.getLogger(__name__)


class RuleLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = self.extra or {}
        event_id = str(extra.get("event_id", "?"))[:8]
        rule_id = str(extra.get("rule_id", "-"))[:8]
        return f"[event={event_id}] [rule={rule_id}] {msg}", kwargs


class DispatchReport(BaseModel):
    """Outcome of dispatching one event."""

    event_id: str
    event_type: str
    entity_id: str
    candidates: int = Field(0, description="Active rules considered")
    matched: int = 0
    executions: List[RuleExecution] = Field(default_factory=list)
    emitted_events: List[CrmEvent] = Field(default_factory=list)
    persisted: bool = True
    persist_error: Optional[str] = None

    def count(self, status: ExecutionStatus) -> int:
        return sum(1 for e in self.executions if e.status == status)


def order_rules(rules: List[AutomationRule]) -> List[AutomationRule]:
    """Priority descending; ties by creation order, earliest first."""
    return sorted(rules, key=lambda r: (-r.priority, r.created_at, r.id))


def build_snapshot(entity: Optional[EntitySnapshot], event: CrmEvent) -> Dict[str, Any]:
    """Condition snapshot: the stored entity plus the triggering event under ``event``."""
    snapshot: Dict[str, Any] = dict(entity or {"id": event.entity_id, "entity_type": event.entity_type})
    snapshot["event"] = {"type": event.type, **event.payload}
    return snapshot


async def _run_action(
    rule: AutomationRule,
    target: ActionTarget,
    serial_lock: asyncio.Lock,
    turn: asyncio.Event,
    next_turn: asyncio.Event,
) -> ActionResult:
    executor = create_executor_from_model(rule.action)
    if not executor.serial:
        return await execute_action(executor, target)

    # Serial actions hand the lock over in priority order.
    await turn.wait()
    try:
        async with serial_lock:
            return await execute_action(executor, target)
    finally:
        next_turn.set()


async def dispatch_event(event: CrmEvent, store: CrmStore) -> DispatchReport:
    """
    Run every matching active rule of the event's tenant against the event.

    1. Snapshot-read the active rules and the entity
    2. Filter with the trigger matcher (per-rule history supplied)
    3. Order by priority, then gate each rule with its conditions
    4. Start all actions in that order; entity-mutating ones run one by one
    5. Persist one RuleExecution per (rule, event) in that same order

    Never raises for a single rule's fault.
    """
    log = RuleLoggerAdapter(logger, {"event_id": event.event_id})
    report = DispatchReport(event_id=event.event_id, event_type=event.type, entity_id=event.entity_id)

    rules = await asyncio.to_thread(store.list_active_rules, event.tenant_id)
    rules = [r for r in rules if r.is_active]
    report.candidates = len(rules)
    if not rules:
        log.debug("No active rules for tenant %s", event.tenant_id)
        return report

    entity = await asyncio.to_thread(store.get_entity, event.tenant_id, event.entity_id)
    snapshot = build_snapshot(entity, event)
    is_tick = event.type == EventType.SCHEDULE_TICK.value

    # (rule, occurrence, passed conditions)
    matched: List[Tuple[AutomationRule, Any, bool]] = []
    for rule in order_rules(rules):
        rule_log = RuleLoggerAdapter(logger, {"event_id": event.event_id, "rule_id": rule.id})
        try:
            history: TriggerHistory = await asyncio.to_thread(
                store.get_trigger_history, event.tenant_id, rule, event.entity_id
            )
            if not matches(rule.trigger, event, entity, history):
                continue
            occurrence = None
            if isinstance(rule.trigger, ScheduledTrigger):
                occurrence = trigger_occurrence(rule.trigger, event.occurred_at)
        except Exception as e:
            rule_log.warning("Trigger evaluation failed, rule not matched: %s", e)
            continue
        matched.append((rule, occurrence, evaluate(rule.conditions, snapshot)))
    report.matched = len(matched)

    # Launch in priority order; the serial chain preserves that order for writes.
    serial_lock = asyncio.Lock()
    turn = asyncio.Event()
    turn.set()
    tasks: List[Optional[asyncio.Task]] = []
    for rule, _occurrence, passed in matched:
        if not passed:
            tasks.append(None)
            continue
        target = ActionTarget(store=store, rule=rule, event=event, entity=snapshot)
        next_turn = asyncio.Event()
        tasks.append(asyncio.create_task(_run_action(rule, target, serial_lock, turn, next_turn)))
        if create_executor_from_model(rule.action).serial:
            turn = next_turn

    results = await asyncio.gather(*(t for t in tasks if t is not None))
    result_iter = iter(results)

    executions: List[RuleExecution] = []
    for sequence, ((rule, occurrence, passed), task) in enumerate(zip(matched, tasks)):
        rule_log = RuleLoggerAdapter(logger, {"event_id": event.event_id, "rule_id": rule.id})
        base = dict(
            tenant_id=event.tenant_id,
            rule_id=rule.id,
            rule_name=rule.name,
            event_id=event.event_id,
            event_type=event.type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            sequence=sequence,
            occurrence_at=occurrence,
        )
        if task is None:
            execution = RuleExecution(
                status=ExecutionStatus.SKIPPED, detail={"reason": "conditions_not_met"}, **base
            )
            persist = PERSIST_SKIPPED_EXECUTIONS and (not is_tick or occurrence is not None)
            if persist:
                executions.append(execution)
            rule_log.debug("Matched but conditions not met%s", "" if persist else " (not recorded)")
            report.executions.append(execution)
            continue

        result: ActionResult = next(result_iter)
        execution = RuleExecution(
            status=result.status,
            error=result.error,
            detail={
                "action_type": rule.action_type.value,
                "result": result.result,
                "duration_ms": result.duration_ms,
            },
            **base,
        )
        if result.success:
            rule_log.info("%s succeeded", rule.action_type.value)
        else:
            rule_log.warning("%s failed: %s", rule.action_type.value, result.error)
        executions.append(execution)
        report.executions.append(execution)
        report.emitted_events.extend(result.emitted_events)

    if executions:
        try:
            await asyncio.to_thread(store.record_executions, executions)
        except Exception as e:
            report.persisted = False
            report.persist_error = str(e)
            log.error("Failed to record %d execution(s): %s", len(executions), e, exc_info=True)

    return report
