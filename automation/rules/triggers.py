# automation/rules/triggers.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

import pytz
from croniter import croniter

from automation.clock import ensure_utc
from automation.rules.conditions import to_number
from automation.rules.models import (
    TENANT_ENTITY_TYPE,
    CrmEvent,
    DealValueThresholdTrigger,
    EventType,
    NoReplyAfterDaysTrigger,
    ScheduledTrigger,
    StageEnteredTrigger,
    TriggerConfig,
    TriggerHistory,
    TriggerType,
)

# Trigger types that match an event of the same name directly
_DIRECT_EVENT_TRIGGERS = {
    TriggerType.EMAIL_OPENED: EventType.EMAIL_OPENED.value,
    TriggerType.EMAIL_REPLIED: EventType.EMAIL_REPLIED.value,
    TriggerType.MEETING_HELD: EventType.MEETING_HELD.value,
}


def as_datetime(value: Any) -> Optional[datetime]:
    """Accept datetimes or ISO-8601 strings; returns UTC-aware or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def trigger_occurrence(trigger: ScheduledTrigger, at: datetime) -> datetime:
    """
    Latest cron occurrence at or before ``at``, resolved in the trigger's timezone.

    Returned in UTC so it can be compared with stored occurrences.
    """
    tz = pytz.timezone(trigger.timezone)
    local = ensure_utc(at).astimezone(tz)
    # get_prev is strict, so start one second past the (whole-second) tick.
    base = local.replace(microsecond=0) + timedelta(seconds=1)
    occurrence = croniter(trigger.cron, base).get_prev(datetime)
    return ensure_utc(occurrence)


def _stage_entered(trigger: StageEnteredTrigger, event: CrmEvent) -> bool:
    to_stage = event.to_stage
    if not to_stage:
        return False
    if event.from_stage is not None and event.from_stage == to_stage:
        return False
    if trigger.from_stage is None:
        return True
    return event.from_stage == trigger.from_stage


def _no_reply_due(
    trigger: NoReplyAfterDaysTrigger,
    event: CrmEvent,
    entity: Optional[Mapping[str, Any]],
    history: TriggerHistory,
) -> bool:
    if event.type != EventType.SCHEDULE_TICK.value or not entity:
        return False

    last_outbound = as_datetime(entity.get("last_outbound_at"))
    if last_outbound is None:
        return False

    last_reply = as_datetime(entity.get("last_reply_at"))
    if last_reply is not None and last_reply >= last_outbound:
        return False

    if event.occurred_at - last_outbound < timedelta(days=trigger.days):
        return False

    # Already actioned for this outbound; a newer outbound resets it.
    last_executed = history.last_executed_at
    if last_executed is not None and ensure_utc(last_executed) >= last_outbound:
        return False
    return True


def _crossed_threshold(trigger: DealValueThresholdTrigger, event: CrmEvent, history: TriggerHistory) -> bool:
    if event.type != EventType.DEAL_VALUE_CHANGED.value:
        return False
    current = to_number(event.deal_value)
    if current is None or current < trigger.threshold:
        return False

    previous = to_number(event.previous_deal_value)
    if previous is not None:
        return previous < trigger.threshold
    # Without a previous value only the first crossing counts.
    return history.last_executed_at is None


def _scheduled_due(trigger: ScheduledTrigger, event: CrmEvent, history: TriggerHistory) -> bool:
    if event.type != EventType.SCHEDULE_TICK.value:
        return False
    if (event.entity_type == TENANT_ENTITY_TYPE) != (trigger.scope == "tenant"):
        return False
    occurrence = trigger_occurrence(trigger, event.occurred_at)
    if history.not_before is not None and occurrence < ensure_utc(history.not_before):
        return False
    if history.last_occurrence_at is not None and occurrence <= ensure_utc(history.last_occurrence_at):
        return False
    return True


def matches(
    trigger: TriggerConfig,
    event: CrmEvent,
    entity: Optional[Mapping[str, Any]] = None,
    history: Optional[TriggerHistory] = None,
) -> bool:
    """
    Decide whether ``event`` makes a rule with ``trigger`` eligible.

    Pure: the entity snapshot and the rule's per-entity history are read by
    the caller beforehand.
    """
    history = history or TriggerHistory()

    if trigger.type in _DIRECT_EVENT_TRIGGERS:
        return event.type == _DIRECT_EVENT_TRIGGERS[trigger.type]
    if isinstance(trigger, StageEnteredTrigger):
        return _stage_entered(trigger, event)
    if isinstance(trigger, NoReplyAfterDaysTrigger):
        return _no_reply_due(trigger, event, entity, history)
    if isinstance(trigger, DealValueThresholdTrigger):
        return _crossed_threshold(trigger, event, history)
    if isinstance(trigger, ScheduledTrigger):
        return _scheduled_due(trigger, event, history)
    return False


def describe_trigger(trigger: TriggerConfig) -> str:
    """Human-readable sentence fragment used by dry runs and template listings."""
    if isinstance(trigger, NoReplyAfterDaysTrigger):
        return f"no reply {trigger.days} day(s) after the last outbound email"
    if isinstance(trigger, StageEnteredTrigger):
        if trigger.from_stage:
            return f"a deal leaves '{trigger.from_stage}' for a new stage"
        return "a deal enters a new stage"
    if isinstance(trigger, DealValueThresholdTrigger):
        return f"deal value reaches {trigger.threshold:g}"
    if isinstance(trigger, ScheduledTrigger):
        return f"schedule '{trigger.cron}' ({trigger.timezone})"
    return {
        TriggerType.EMAIL_OPENED: "an email is opened",
        TriggerType.EMAIL_REPLIED: "an email is replied to",
        TriggerType.MEETING_HELD: "a meeting is held",
    }.get(trigger.type, trigger.type.value)
