# crm_api/schemas/templates.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from automation.rules.models import ConflictReport
from crm_api.schemas.rules import RuleResponse


class TemplateResponse(BaseModel):
    """Rule template (built-in or tenant-owned)."""

    id: str
    tenant_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    category: str
    tags: List[str] = Field(default_factory=list)
    trigger_type: str
    trigger_config: Dict[str, Any]
    action_type: str
    action_config: Dict[str, Any]
    conditions: Dict[str, Any]
    priority: int
    is_builtin: bool
    install_count: int
    version: int
    rating_average: Optional[float] = None
    rating_count: int = 0
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class TemplateListResponse(BaseModel):
    templates: list[TemplateResponse]
    total: int


class TemplateInstallRequest(BaseModel):
    """Customisations merged into the template before the rule is created."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[int] = None
    status: Optional[str] = None
    trigger_config: Optional[Dict[str, Any]] = Field(None, alias="triggerConfig")
    action_config: Optional[Dict[str, Any]] = Field(None, alias="actionConfig")
    conditions: Optional[Dict[str, Any]] = None


class TemplateInstallResponse(BaseModel):
    rule: RuleResponse
    conflicts: list[ConflictReport] = Field(default_factory=list)


class TemplateCreateRequest(BaseModel):
    """Save an existing rule as a tenant template."""

    model_config = ConfigDict(populate_by_name=True)

    rule_id: str = Field(..., alias="ruleId")
    name: Optional[str] = Field(None, description="Defaults to the rule's name")
    description: Optional[str] = None
    category: str = "custom"
    tags: List[str] = Field(default_factory=list)


class TemplateUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: Optional[List[str]] = None
    priority: Optional[int] = None
    trigger_config: Optional[Dict[str, Any]] = Field(None, alias="triggerConfig")
    action_config: Optional[Dict[str, Any]] = Field(None, alias="actionConfig")
    conditions: Optional[Dict[str, Any]] = None
    changelog: Optional[str] = Field(None, description="What changed in this version")


class TemplateVersionResponse(BaseModel):
    version: int
    definition: Dict[str, Any]
    changelog: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


class TemplateVersionListResponse(BaseModel):
    template_id: str
    versions: list[TemplateVersionResponse]


class TemplateRollbackRequest(BaseModel):
    version: int = Field(..., ge=1)
    changelog: Optional[str] = None


class TemplateReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5, description="1 (poor) to 5 (excellent)")
    comment: Optional[str] = None


class TemplateRatingResponse(BaseModel):
    template_id: str
    average: Optional[float] = None
    count: int
