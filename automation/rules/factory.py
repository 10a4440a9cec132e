# automation/rules/factory.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError

from automation.exceptions import RuleValidationError
from automation.rules.models import (
    ActionConfig,
    ActionType,
    AutomationRule,
    ConditionGroup,
    CreateTaskAction,
    DealValueThresholdTrigger,
    EmailOpenedTrigger,
    EmailRepliedTrigger,
    EnrollSequenceAction,
    MeetingHeldTrigger,
    MoveStageAction,
    NoReplyAfterDaysTrigger,
    ScheduledTrigger,
    SendNotificationAction,
    StageEnteredTrigger,
    TriggerConfig,
    TriggerType,
    UpdateFieldAction,
)

TRIGGER_MODELS: Dict[TriggerType, Type[TriggerConfig]] = {
    TriggerType.EMAIL_OPENED: EmailOpenedTrigger,
    TriggerType.EMAIL_REPLIED: EmailRepliedTrigger,
    TriggerType.MEETING_HELD: MeetingHeldTrigger,
    TriggerType.NO_REPLY_AFTER_DAYS: NoReplyAfterDaysTrigger,
    TriggerType.STAGE_ENTERED: StageEnteredTrigger,
    TriggerType.DEAL_VALUE_THRESHOLD: DealValueThresholdTrigger,
    TriggerType.SCHEDULED: ScheduledTrigger,
}

ACTION_MODELS: Dict[ActionType, Type[ActionConfig]] = {
    ActionType.MOVE_STAGE: MoveStageAction,
    ActionType.SEND_NOTIFICATION: SendNotificationAction,
    ActionType.CREATE_TASK: CreateTaskAction,
    ActionType.ENROLL_SEQUENCE: EnrollSequenceAction,
    ActionType.UPDATE_FIELD: UpdateFieldAction,
}


def _problems(prefix: str, exc: ValidationError) -> List[str]:
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "type")
        problems.append(f"{prefix}{'.' + loc if loc else ''}: {err.get('msg', 'invalid')}")
    return problems


def _pick(payload: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return default


def create_trigger(trigger_type: Any, config: Optional[Dict[str, Any]] = None) -> TriggerConfig:
    """
    Build the typed trigger variant for ``trigger_type``.

    Raises:
        RuleValidationError: unknown type or invalid parameters
    """
    if not trigger_type:
        raise RuleValidationError("triggerType is required")
    try:
        kind = TriggerType(trigger_type)
    except ValueError as e:
        raise RuleValidationError(f"Invalid trigger type: {trigger_type}") from e

    if config is not None and not isinstance(config, dict):
        raise RuleValidationError("triggerConfig must be an object")
    try:
        return TRIGGER_MODELS[kind].model_validate({**(config or {}), "type": kind})
    except ValidationError as e:
        problems = _problems("triggerConfig", e)
        raise RuleValidationError(f"Invalid triggerConfig for {kind.value}: {problems[0]}", problems) from e


def create_action(action_type: Any, config: Optional[Dict[str, Any]] = None) -> ActionConfig:
    """
    Build the typed action variant for ``action_type``.

    Raises:
        RuleValidationError: unknown type or invalid parameters
    """
    if not action_type:
        raise RuleValidationError("actionType is required")
    try:
        kind = ActionType(action_type)
    except ValueError as e:
        raise RuleValidationError(f"Invalid action type: {action_type}") from e

    if config is not None and not isinstance(config, dict):
        raise RuleValidationError("actionConfig must be an object")
    try:
        return ACTION_MODELS[kind].model_validate({**(config or {}), "type": kind})
    except ValidationError as e:
        problems = _problems("actionConfig", e)
        raise RuleValidationError(f"Invalid actionConfig for {kind.value}: {problems[0]}", problems) from e


def create_conditions(raw: Any) -> ConditionGroup:
    if raw is None or raw == {}:
        return ConditionGroup()
    if isinstance(raw, ConditionGroup):
        return raw
    try:
        return ConditionGroup.model_validate(raw)
    except ValidationError as e:
        problems = _problems("conditions", e)
        raise RuleValidationError(f"Invalid conditions: {problems[0]}", problems) from e


def create_rule(tenant_id: str, payload: Dict[str, Any], **overrides: Any) -> AutomationRule:
    """
    Create a validated AutomationRule from the flat wire payload
    (``triggerType``/``triggerConfig``/``actionType``/``actionConfig``; snake_case also accepted).

    Args:
        tenant_id: Owning tenant
        payload: Flat rule payload as produced by the builder UI or a template
        **overrides: Model fields set directly (id, version, created_at, ...)

    Returns:
        AutomationRule

    Raises:
        RuleValidationError: If any part of the payload is invalid; nothing is built
    """
    name = _pick(payload, "name")
    if not name or not str(name).strip():
        raise RuleValidationError("name is required")

    trigger = create_trigger(
        _pick(payload, "triggerType", "trigger_type"),
        _pick(payload, "triggerConfig", "trigger_config"),
    )
    action = create_action(
        _pick(payload, "actionType", "action_type"),
        _pick(payload, "actionConfig", "action_config"),
    )
    conditions = create_conditions(_pick(payload, "conditions"))

    fields: Dict[str, Any] = {
        "tenant_id": tenant_id,
        "name": str(name).strip(),
        "description": _pick(payload, "description"),
        "priority": _pick(payload, "priority", default=0) or 0,
        "trigger": trigger,
        "action": action,
        "conditions": conditions,
        "created_by": _pick(payload, "createdBy", "created_by"),
    }
    status = _pick(payload, "status")
    if status is not None:
        fields["status"] = status
    fields.update(overrides)

    try:
        return AutomationRule(**fields)
    except ValidationError as e:
        problems = _problems("rule", e)
        raise RuleValidationError(f"Invalid rule: {problems[0]}", problems) from e


def rule_to_payload(rule: AutomationRule) -> Dict[str, Any]:
    """Flat wire representation of a rule's definition (no identity or audit fields)."""
    return {
        "name": rule.name,
        "description": rule.description,
        "status": rule.status.value,
        "priority": rule.priority,
        "triggerType": rule.trigger.type.value,
        "triggerConfig": rule.trigger.to_config(),
        "actionType": rule.action.type.value,
        "actionConfig": rule.action.to_config(),
        "conditions": rule.conditions.model_dump(mode="json"),
    }
