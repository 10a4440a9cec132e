# automation/rules/models.py
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

import pytz
from croniter import croniter
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from automation.clock import ensure_utc, utcnow
from automation.conf import DEFAULT_TIMEZONE


class RuleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class TriggerType(str, Enum):
    """Event classes that make a rule eligible to evaluate."""

    EMAIL_OPENED = "email_opened"
    EMAIL_REPLIED = "email_replied"
    NO_REPLY_AFTER_DAYS = "no_reply_after_days"
    MEETING_HELD = "meeting_held"
    STAGE_ENTERED = "stage_entered"
    DEAL_VALUE_THRESHOLD = "deal_value_threshold"
    SCHEDULED = "scheduled"


class ActionType(str, Enum):
    """Side effects a rule can apply when it fires."""

    MOVE_STAGE = "move_stage"
    SEND_NOTIFICATION = "send_notification"
    CREATE_TASK = "create_task"
    ENROLL_SEQUENCE = "enroll_sequence"
    UPDATE_FIELD = "update_field"


class EventType(str, Enum):
    """Event types produced by the CRM. Inbound events may carry other types too."""

    EMAIL_SENT = "email_sent"
    EMAIL_OPENED = "email_opened"
    EMAIL_REPLIED = "email_replied"
    EMAIL_BOUNCED = "email_bounced"
    MEETING_HELD = "meeting_held"
    STAGE_CHANGED = "stage_changed"
    DEAL_VALUE_CHANGED = "deal_value_changed"
    SCHEDULE_TICK = "schedule_tick"


# Entity type of the per-tenant schedule tick (entity_id is the tenant id)
TENANT_ENTITY_TYPE = "tenant"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ----------------------------------------------------------------------
# Conditions
# ----------------------------------------------------------------------


class ConditionRule(BaseModel):
    """A single field comparison against the entity snapshot."""

    field: str = Field(..., min_length=1, description="Dotted path into the entity snapshot")
    operator: ConditionOperator
    value: Any = Field(None, description="Comparison operand (unused by is_empty/is_not_empty)")


class ConditionGroup(BaseModel):
    """AND/OR group of rules and nested groups. An empty group always matches."""

    model_config = ConfigDict(extra="forbid")

    logic: Literal["AND", "OR"] = "AND"
    rules: List[Union[ConditionRule, ConditionGroup]] = Field(default_factory=list)

    @field_validator("logic", mode="before")
    @classmethod
    def normalize_logic(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().upper()
        return v


# ----------------------------------------------------------------------
# Trigger configs (one variant per TriggerType)
# ----------------------------------------------------------------------


class TriggerConfig(BaseModel):
    """Base class for trigger variants."""

    model_config = ConfigDict(populate_by_name=True)

    type: TriggerType

    def to_config(self) -> Dict[str, Any]:
        """Wire representation of the variant's parameters (camelCase, no type key)."""
        return self.model_dump(mode="json", by_alias=True, exclude={"type"}, exclude_none=True)


class EmailOpenedTrigger(TriggerConfig):
    type: Literal[TriggerType.EMAIL_OPENED] = TriggerType.EMAIL_OPENED


class EmailRepliedTrigger(TriggerConfig):
    type: Literal[TriggerType.EMAIL_REPLIED] = TriggerType.EMAIL_REPLIED


class MeetingHeldTrigger(TriggerConfig):
    type: Literal[TriggerType.MEETING_HELD] = TriggerType.MEETING_HELD


class NoReplyAfterDaysTrigger(TriggerConfig):
    type: Literal[TriggerType.NO_REPLY_AFTER_DAYS] = TriggerType.NO_REPLY_AFTER_DAYS
    days: int = Field(..., ge=1, description="Days since the last unanswered outbound email")


class StageEnteredTrigger(TriggerConfig):
    type: Literal[TriggerType.STAGE_ENTERED] = TriggerType.STAGE_ENTERED
    from_stage: Optional[str] = Field(
        None, alias="fromStage", description="Required origin stage; unset means any origin"
    )

    @field_validator("from_stage")
    @classmethod
    def blank_is_any(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class DealValueThresholdTrigger(TriggerConfig):
    type: Literal[TriggerType.DEAL_VALUE_THRESHOLD] = TriggerType.DEAL_VALUE_THRESHOLD
    threshold: float = Field(..., ge=0, description="Deal value that must be crossed upward")


class ScheduledTrigger(TriggerConfig):
    type: Literal[TriggerType.SCHEDULED] = TriggerType.SCHEDULED
    cron: str = Field(..., description="Five-field cron expression")
    timezone: str = Field(default_factory=lambda: DEFAULT_TIMEZONE, description="IANA timezone name")
    scope: Literal["tenant", "entity"] = Field(
        "tenant", description="Fire once per occurrence for the tenant, or once per occurrence per entity"
    )

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        v = v.strip()
        if not croniter.is_valid(v):
            raise ValueError(f"Invalid cron expression: {v!r}")
        return v

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        if v not in pytz.all_timezones_set:
            raise ValueError(f"Unknown timezone: {v!r}")
        return v


Trigger = Annotated[
    Union[
        EmailOpenedTrigger,
        EmailRepliedTrigger,
        MeetingHeldTrigger,
        NoReplyAfterDaysTrigger,
        StageEnteredTrigger,
        DealValueThresholdTrigger,
        ScheduledTrigger,
    ],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Action configs (one variant per ActionType)
# ----------------------------------------------------------------------


class ActionConfig(BaseModel):
    """Base class for action variants."""

    model_config = ConfigDict(populate_by_name=True)

    type: ActionType

    def to_config(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"type"}, exclude_none=True)


class MoveStageAction(ActionConfig):
    type: Literal[ActionType.MOVE_STAGE] = ActionType.MOVE_STAGE
    to_stage: str = Field(..., alias="toStage", min_length=1, description="Target pipeline stage")


class SendNotificationAction(ActionConfig):
    type: Literal[ActionType.SEND_NOTIFICATION] = ActionType.SEND_NOTIFICATION
    title: str = Field("Automation alert", min_length=1)
    message: str = Field(..., min_length=1, description="Body; supports {{placeholders}}")
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    recipient_user_id: Optional[str] = Field(None, alias="recipientUserId")


class CreateTaskAction(ActionConfig):
    type: Literal[ActionType.CREATE_TASK] = ActionType.CREATE_TASK
    title: str = Field(..., min_length=1, description="Task title; supports {{placeholders}}")
    description: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"
    due_in_days: Optional[int] = Field(None, alias="dueInDays", ge=0)
    assignee_id: Optional[str] = Field(None, alias="assigneeId")


class EnrollSequenceAction(ActionConfig):
    type: Literal[ActionType.ENROLL_SEQUENCE] = ActionType.ENROLL_SEQUENCE
    workflow_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("workflowId", "workflow_id", "sequenceId"),
        serialization_alias="workflowId",
    )


class UpdateFieldAction(ActionConfig):
    type: Literal[ActionType.UPDATE_FIELD] = ActionType.UPDATE_FIELD
    update_type: Literal["field", "tag", "score"] = Field("field", alias="updateType")
    field: Optional[str] = Field(None, description="Field name for updateType=field")
    value: Any = Field(None, description="Literal value for updateType=field")
    tag: Optional[str] = Field(None, description="Tag to append for updateType=tag")
    delta: Optional[int] = Field(None, description="Score delta for updateType=score")

    @model_validator(mode="after")
    def check_variant_fields(self) -> "UpdateFieldAction":
        if self.update_type == "field" and not self.field:
            raise ValueError("updateType 'field' requires 'field'")
        if self.update_type == "tag" and not (self.tag and self.tag.strip()):
            raise ValueError("updateType 'tag' requires a non-empty 'tag'")
        if self.update_type == "score" and self.delta is None:
            raise ValueError("updateType 'score' requires 'delta'")
        return self


Action = Annotated[
    Union[
        MoveStageAction,
        SendNotificationAction,
        CreateTaskAction,
        EnrollSequenceAction,
        UpdateFieldAction,
    ],
    Field(discriminator="type"),
]


# ----------------------------------------------------------------------
# Rules, events, executions
# ----------------------------------------------------------------------


def _new_id() -> str:
    return str(uuid.uuid4())


class AutomationRule(BaseModel):
    """A tenant-defined trigger + condition + action automation."""

    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    status: RuleStatus = RuleStatus.ACTIVE
    priority: int = 0
    trigger: Trigger
    action: Action
    conditions: ConditionGroup = Field(default_factory=ConditionGroup)
    created_by: Optional[str] = None
    version: int = Field(1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @field_validator("conditions", mode="before")
    @classmethod
    def default_conditions(cls, v: Any) -> Any:
        return v or {}

    @field_validator("created_at")
    @classmethod
    def created_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def trigger_type(self) -> TriggerType:
        return self.trigger.type

    @property
    def action_type(self) -> ActionType:
        return self.action.type

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE


class CrmEvent(BaseModel):
    """Inbound CRM event fed to the dispatcher."""

    model_config = ConfigDict(populate_by_name=True)

    event_id: str = Field(default_factory=_new_id, alias="eventId")
    type: str = Field(..., min_length=1)
    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    entity_id: str = Field(..., alias="entityId", min_length=1)
    entity_type: str = Field("contact", alias="entityType")
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow, alias="occurredAt")
    dedupe_key: Optional[str] = Field(None, alias="dedupeKey")
    source: str = "api"

    @field_validator("occurred_at")
    @classmethod
    def occurred_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def _payload_value(self, *keys: str) -> Any:
        for key in keys:
            if self.payload.get(key) is not None:
                return self.payload[key]
        return None

    @property
    def to_stage(self) -> Optional[str]:
        return self._payload_value("to_stage", "toStage")

    @property
    def from_stage(self) -> Optional[str]:
        return self._payload_value("from_stage", "fromStage")

    @property
    def deal_value(self) -> Any:
        return self._payload_value("deal_value", "dealValue")

    @property
    def previous_deal_value(self) -> Any:
        return self._payload_value("previous_deal_value", "previousDealValue")

    @property
    def key(self) -> str:
        """Idempotency key: explicit dedupe key or type/entity/timestamp."""
        return self.dedupe_key or f"{self.type}:{self.entity_id}:{self.occurred_at.isoformat()}"


class TriggerHistory(BaseModel):
    """Per (rule, entity) execution history the matcher needs to stay re-entrant-safe."""

    last_executed_at: Optional[datetime] = Field(None, description="Latest successful execution")
    last_occurrence_at: Optional[datetime] = Field(None, description="Latest handled cron occurrence")
    not_before: Optional[datetime] = Field(None, description="No cron occurrence before this (rule creation)")


class RuleExecution(BaseModel):
    """Immutable audit record for one (rule, event) pair."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    tenant_id: str
    rule_id: str
    rule_name: Optional[str] = None
    event_id: str
    event_type: str
    entity_type: str
    entity_id: str
    status: ExecutionStatus
    sequence: int = Field(..., ge=0, description="Position within the event's dispatch order")
    executed_at: datetime = Field(default_factory=utcnow)
    occurrence_at: Optional[datetime] = None
    error: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)


class ConflictKind(str, Enum):
    OPPOSITE_ACTION = "opposite_action"
    LOOP = "loop"


class ConflictReport(BaseModel):
    """Advisory warning about two active rules that may contradict or loop."""

    kind: ConflictKind
    rule_ids: List[str]
    rule_names: List[str]
    stages: List[str]
    message: str
