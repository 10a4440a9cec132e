# crm_api/routers/workflows.py
from datetime import datetime
from typing import Any, List, Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from automation.exceptions import WorkflowNotFoundError, WorkflowValidationError
from automation.workflows.models import Enrollment, EnrollmentStatus, WorkflowNode, WorkflowStatus
from crm_api.auth import get_tenant_id, verify_api_key
from crm_api.db.models import Workflow
from crm_api.schemas.workflows import (
    EnrollmentListResponse,
    EnrollmentResponse,
    EnrollRequest,
    WorkflowCreateRequest,
    WorkflowListResponse,
    WorkflowResponse,
    WorkflowStatusRequest,
    WorkflowUpdateRequest,
    WorkflowValidationResponse,
)
from crm_api.services.workflows import (
    create_workflow,
    delete_workflow,
    enroll_entity,
    get_workflow,
    list_enrollments,
    list_workflows,
    pause_enrollment,
    resume_enrollment,
    set_workflow_status,
    stop_enrollment,
    update_workflow,
    validate_workflow,
)

router = APIRouter(dependencies=[Depends(verify_api_key)])

WORKFLOW_NOT_FOUND = "Workflow not found"
ENROLLMENT_NOT_FOUND = "Enrollment not found"


def _invalid_workflow(e: WorkflowValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": str(e), "problems": e.problems},
    )


def _workflow_to_response(workflow: Workflow, problems: Optional[List[str]] = None) -> WorkflowResponse:
    """Convert Workflow model to WorkflowResponse schema."""
    return WorkflowResponse(
        workflow_id=cast(str, workflow.workflow_id),
        tenant_id=cast(str, workflow.tenant_id),
        name=cast(str, workflow.name),
        description=cast(Optional[str], workflow.description),
        status=WorkflowStatus(cast(str, workflow.status)),
        version=cast(int, workflow.version),
        entry_node_id=cast(str, workflow.entry_node_id),
        nodes=[WorkflowNode.model_validate(node) for node in cast(list[dict[str, Any]], workflow.nodes)],
        problems=problems or [],
        created_at=cast(datetime, workflow.created_at),
        updated_at=cast(datetime, workflow.updated_at),
    )


def _enrollment_to_response(enrollment: Enrollment, created: Optional[bool] = None) -> EnrollmentResponse:
    return EnrollmentResponse(**enrollment.model_dump(exclude={"tenant_id", "last_transition_at"}), created=created)


@router.post("/workflows", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
def create_workflow_endpoint(request: WorkflowCreateRequest, tenant_id: str = Depends(get_tenant_id)):
    """Create a workflow. Drafts are stored with their validation problems."""
    try:
        row, problems = create_workflow(tenant_id, request.model_dump())
    except WorkflowValidationError as e:
        raise _invalid_workflow(e)
    return _workflow_to_response(row, problems)


@router.get("/workflows", response_model=WorkflowListResponse)
def list_workflows_endpoint(
    status: Optional[WorkflowStatus] = Query(None, description="Filter by status"),
    tenant_id: str = Depends(get_tenant_id),
):
    workflows = list_workflows(tenant_id, status=status.value if status else None)
    return WorkflowListResponse(workflows=[_workflow_to_response(w) for w in workflows], total=len(workflows))


@router.get("/workflows/enrollments", response_model=EnrollmentListResponse)
def list_enrollments_endpoint(
    workflow_id: Optional[str] = Query(None, description="Filter by workflow"),
    entity_id: Optional[str] = Query(None, description="Filter by entity"),
    status: Optional[EnrollmentStatus] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
):
    enrollments, total = list_enrollments(
        tenant_id,
        workflow_id=workflow_id,
        entity_id=entity_id,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return EnrollmentListResponse(
        enrollments=[_enrollment_to_response(e) for e in enrollments],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/workflows/enrollments/{enrollment_id}/pause", response_model=EnrollmentResponse)
def pause_enrollment_endpoint(enrollment_id: str, tenant_id: str = Depends(get_tenant_id)):
    return _enrollment_transition(pause_enrollment, tenant_id, enrollment_id)


@router.post("/workflows/enrollments/{enrollment_id}/resume", response_model=EnrollmentResponse)
def resume_enrollment_endpoint(enrollment_id: str, tenant_id: str = Depends(get_tenant_id)):
    return _enrollment_transition(resume_enrollment, tenant_id, enrollment_id)


@router.post("/workflows/enrollments/{enrollment_id}/stop", response_model=EnrollmentResponse)
def stop_enrollment_endpoint(enrollment_id: str, tenant_id: str = Depends(get_tenant_id)):
    return _enrollment_transition(stop_enrollment, tenant_id, enrollment_id)


def _enrollment_transition(transition, tenant_id: str, enrollment_id: str) -> EnrollmentResponse:
    try:
        enrollment = transition(tenant_id, enrollment_id)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if enrollment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=ENROLLMENT_NOT_FOUND)
    return _enrollment_to_response(enrollment)


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
def get_workflow_endpoint(workflow_id: str, tenant_id: str = Depends(get_tenant_id)):
    workflow = get_workflow(tenant_id, workflow_id)
    if not workflow:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=WORKFLOW_NOT_FOUND)
    return _workflow_to_response(workflow, validate_workflow(tenant_id, workflow_id))


@router.put("/workflows/{workflow_id}", response_model=WorkflowResponse)
def update_workflow_endpoint(
    workflow_id: str, request: WorkflowUpdateRequest, tenant_id: str = Depends(get_tenant_id)
):
    try:
        updated = update_workflow(tenant_id, workflow_id, request.model_dump(exclude_none=True))
    except WorkflowValidationError as e:
        raise _invalid_workflow(e)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=WORKFLOW_NOT_FOUND)
    return _workflow_to_response(*updated)


@router.delete("/workflows/{workflow_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workflow_endpoint(workflow_id: str, tenant_id: str = Depends(get_tenant_id)):
    if not delete_workflow(tenant_id, workflow_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=WORKFLOW_NOT_FOUND)


@router.post("/workflows/{workflow_id}/status", response_model=WorkflowResponse)
def set_workflow_status_endpoint(
    workflow_id: str, request: WorkflowStatusRequest, tenant_id: str = Depends(get_tenant_id)
):
    """Activate, archive or return a workflow to draft. Only valid graphs can be activated."""
    try:
        workflow = set_workflow_status(tenant_id, workflow_id, request.status)
    except WorkflowValidationError as e:
        raise _invalid_workflow(e)
    if workflow is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=WORKFLOW_NOT_FOUND)
    return _workflow_to_response(workflow)


@router.post("/workflows/{workflow_id}/validate", response_model=WorkflowValidationResponse)
def validate_workflow_endpoint(workflow_id: str, tenant_id: str = Depends(get_tenant_id)):
    problems = validate_workflow(tenant_id, workflow_id)
    if problems is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=WORKFLOW_NOT_FOUND)
    return WorkflowValidationResponse(valid=not problems, problems=problems)


@router.post(
    "/workflows/{workflow_id}/enrollments",
    response_model=EnrollmentResponse,
    status_code=status.HTTP_201_CREATED,
)
def enroll_endpoint(workflow_id: str, request: EnrollRequest, tenant_id: str = Depends(get_tenant_id)):
    """Enroll an entity; an existing live enrollment is returned unchanged."""
    try:
        enrollment, created = enroll_entity(
            tenant_id,
            workflow_id,
            request.entity_id,
            entity_type=request.entity_type,
            initial_state=request.initial_state,
        )
    except WorkflowNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=WORKFLOW_NOT_FOUND)
    except WorkflowValidationError as e:
        raise _invalid_workflow(e)
    return _enrollment_to_response(enrollment, created)
