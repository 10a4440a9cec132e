# crm_api/schemas/rules.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from automation.rules.models import ConflictReport, ExecutionStatus, RuleStatus


class RuleCreateRequest(BaseModel):
    """Request to create a rule. Accepts the builder's camelCase keys or snake_case."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Rule name (1-200 characters)")
    description: Optional[str] = None
    status: RuleStatus = RuleStatus.ACTIVE
    priority: int = Field(0, description="Higher runs first")
    trigger_type: str = Field(..., alias="triggerType")
    trigger_config: Dict[str, Any] = Field(default_factory=dict, alias="triggerConfig")
    action_type: str = Field(..., alias="actionType")
    action_config: Dict[str, Any] = Field(default_factory=dict, alias="actionConfig")
    conditions: Optional[Dict[str, Any]] = Field(None, description="Nested AND/OR condition group")


class RuleUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their current value."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[RuleStatus] = None
    priority: Optional[int] = None
    trigger_type: Optional[str] = Field(None, alias="triggerType")
    trigger_config: Optional[Dict[str, Any]] = Field(None, alias="triggerConfig")
    action_type: Optional[str] = Field(None, alias="actionType")
    action_config: Optional[Dict[str, Any]] = Field(None, alias="actionConfig")
    conditions: Optional[Dict[str, Any]] = None
    note: Optional[str] = Field(None, description="Recorded on the new version")


class RuleResponse(BaseModel):
    """Rule with any advisory conflicts found when it was saved."""

    id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    status: RuleStatus
    priority: int
    trigger_type: str
    trigger_config: Dict[str, Any]
    action_type: str
    action_config: Dict[str, Any]
    conditions: Dict[str, Any]
    created_by: Optional[str] = None
    version: int
    template_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    conflicts: List[ConflictReport] = Field(default_factory=list)


class RuleListResponse(BaseModel):
    rules: list[RuleResponse]
    total: int


class ConflictCheckResponse(BaseModel):
    """Advisory conflicts for a candidate rule; nothing is saved."""

    conflicts: list[ConflictReport]


class RuleVersionResponse(BaseModel):
    version: int
    definition: Dict[str, Any]
    note: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


class RuleVersionListResponse(BaseModel):
    rule_id: str
    versions: list[RuleVersionResponse]


class RuleRollbackRequest(BaseModel):
    version: int = Field(..., ge=1, description="Version to restore")
    note: Optional[str] = None


class ExecutionResponse(BaseModel):
    """Audit record of one rule evaluated against one event."""

    id: str
    rule_id: str
    rule_name: Optional[str] = None
    event_id: str
    event_type: str
    entity_type: str
    entity_id: str
    status: ExecutionStatus
    sequence: int
    occurrence_at: Optional[datetime] = None
    error: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    executed_at: datetime


class ExecutionListResponse(BaseModel):
    """List of executions with pagination."""

    executions: list[ExecutionResponse]
    total: int
    limit: int
    offset: int
