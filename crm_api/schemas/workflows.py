# crm_api/schemas/workflows.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from automation.workflows.models import EnrollmentStatus, WorkflowNode, WorkflowStatus


class WorkflowCreateRequest(BaseModel):
    """Workflow graph; saved as draft unless ``status`` says otherwise."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    entry_node_id: str = Field(..., alias="entryNodeId")
    nodes: List[WorkflowNode] = Field(default_factory=list)


class WorkflowUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    entry_node_id: Optional[str] = Field(None, alias="entryNodeId")
    nodes: Optional[List[WorkflowNode]] = None


class WorkflowStatusRequest(BaseModel):
    status: WorkflowStatus


class WorkflowResponse(BaseModel):
    workflow_id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    status: WorkflowStatus
    version: int
    entry_node_id: str
    nodes: List[WorkflowNode]
    problems: List[str] = Field(default_factory=list, description="Static validation problems")
    created_at: datetime
    updated_at: datetime


class WorkflowListResponse(BaseModel):
    workflows: list[WorkflowResponse]
    total: int


class WorkflowValidationResponse(BaseModel):
    valid: bool
    problems: List[str]


class EnrollRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entity_id: str = Field(..., alias="entityId")
    entity_type: str = Field("contact", alias="entityType")
    initial_state: Optional[Dict[str, Any]] = Field(None, alias="initialState")


class EnrollmentResponse(BaseModel):
    enrollment_id: str
    workflow_id: str
    entity_id: str
    entity_type: str
    current_node_id: Optional[str] = None
    status: EnrollmentStatus
    outcome: Optional[str] = None
    enrolled_at: datetime
    node_entered_at: datetime
    next_check_at: Optional[datetime] = None
    wait_expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    state: Dict[str, Any] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list)
    source_rule_id: Optional[str] = None
    parent_enrollment_id: Optional[str] = None
    created: Optional[bool] = Field(None, description="False when an existing enrollment was returned")


class EnrollmentListResponse(BaseModel):
    enrollments: list[EnrollmentResponse]
    total: int
    limit: int
    offset: int
