# crm_api/routers/rules.py
import logging
from datetime import datetime
from typing import Any, List, Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from automation.exceptions import RuleValidationError
from automation.rules.dry_run import DryRunResult
from automation.rules.models import ConflictReport, ExecutionStatus, RuleStatus
from crm_api.auth import get_tenant_id, get_user_id, verify_api_key
from crm_api.db.models import Execution, Rule, RuleVersion
from crm_api.schemas.rules import (
    ConflictCheckResponse,
    ExecutionListResponse,
    ExecutionResponse,
    RuleCreateRequest,
    RuleListResponse,
    RuleResponse,
    RuleRollbackRequest,
    RuleUpdateRequest,
    RuleVersionListResponse,
    RuleVersionResponse,
)
from crm_api.services.rules import (
    clone_rule,
    create_rule_record,
    delete_rule_record,
    dry_run_rule,
    get_rule,
    list_executions,
    list_rule_versions,
    list_rules,
    preview_conflicts,
    rollback_rule,
    toggle_rule,
    update_rule_record,
)

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])

RULE_NOT_FOUND = "Rule not found"


def invalid_rule(e: RuleValidationError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"message": str(e), "problems": e.problems},
    )


def rule_to_response(rule: Rule, conflicts: Optional[List[ConflictReport]] = None) -> RuleResponse:
    """Convert Rule model to RuleResponse schema."""
    return RuleResponse(
        id=cast(str, rule.id),
        tenant_id=cast(str, rule.tenant_id),
        name=cast(str, rule.name),
        description=cast(Optional[str], rule.description),
        status=RuleStatus(cast(str, rule.status)),
        priority=cast(int, rule.priority),
        trigger_type=cast(str, rule.trigger_type),
        trigger_config=cast(dict[str, Any], rule.trigger_config),
        action_type=cast(str, rule.action_type),
        action_config=cast(dict[str, Any], rule.action_config),
        conditions=cast(dict[str, Any], rule.conditions),
        created_by=cast(Optional[str], rule.created_by),
        version=cast(int, rule.version),
        template_id=cast(Optional[str], rule.template_id),
        created_at=cast(datetime, rule.created_at),
        updated_at=cast(datetime, rule.updated_at),
        conflicts=conflicts or [],
    )


def _version_to_response(version: RuleVersion) -> RuleVersionResponse:
    return RuleVersionResponse(
        version=cast(int, version.version),
        definition=cast(dict[str, Any], version.definition),
        note=cast(Optional[str], version.note),
        created_by=cast(Optional[str], version.created_by),
        created_at=cast(datetime, version.created_at),
    )


def _execution_to_response(execution: Execution) -> ExecutionResponse:
    return ExecutionResponse(
        id=cast(str, execution.id),
        rule_id=cast(str, execution.rule_id),
        rule_name=cast(Optional[str], execution.rule_name),
        event_id=cast(str, execution.event_id),
        event_type=cast(str, execution.event_type),
        entity_type=cast(str, execution.entity_type),
        entity_id=cast(str, execution.entity_id),
        status=ExecutionStatus(cast(str, execution.status)),
        sequence=cast(int, execution.sequence),
        occurrence_at=cast(Optional[datetime], execution.occurrence_at),
        error=cast(Optional[str], execution.error),
        detail=cast(Optional[dict[str, Any]], execution.detail),
        executed_at=cast(datetime, execution.executed_at),
    )


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
def create_rule_endpoint(
    request: RuleCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Create a rule. Conflicts with active rules are reported, never blocking."""
    try:
        row, conflicts = create_rule_record(
            tenant_id, request.model_dump(mode="json", by_alias=True), created_by=user_id
        )
    except RuleValidationError as e:
        raise invalid_rule(e)
    except Exception as e:
        logger.error("Error creating rule: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Internal server error: {str(e)}"
        )
    return rule_to_response(row, conflicts)


@router.get("/rules", response_model=RuleListResponse)
def list_rules_endpoint(
    status: Optional[RuleStatus] = Query(None, description="Filter by status"),
    trigger_type: Optional[str] = Query(None, description="Filter by trigger type"),
    tenant_id: str = Depends(get_tenant_id),
):
    """List the tenant's rules, highest priority first."""
    rules = list_rules(tenant_id, status=status.value if status else None, trigger_type=trigger_type)
    return RuleListResponse(rules=[rule_to_response(rule) for rule in rules], total=len(rules))


@router.post("/rules/conflicts", response_model=ConflictCheckResponse)
def check_conflicts_endpoint(
    request: RuleCreateRequest,
    rule_id: Optional[str] = Query(None, description="Id of the rule being edited"),
    tenant_id: str = Depends(get_tenant_id),
):
    """Preview conflicts for a rule definition without saving it."""
    try:
        conflicts = preview_conflicts(tenant_id, request.model_dump(mode="json", by_alias=True), rule_id=rule_id)
    except RuleValidationError as e:
        raise invalid_rule(e)
    return ConflictCheckResponse(conflicts=conflicts)


@router.get("/rules/{rule_id}", response_model=RuleResponse)
def get_rule_endpoint(rule_id: str, tenant_id: str = Depends(get_tenant_id)):
    rule = get_rule(tenant_id, rule_id)
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    return rule_to_response(rule)


@router.put("/rules/{rule_id}", response_model=RuleResponse)
def update_rule_endpoint(
    rule_id: str,
    request: RuleUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Update a rule; every update is a new version."""
    changes = request.model_dump(mode="json", by_alias=True, exclude_none=True)
    note = changes.pop("note", None)
    try:
        updated = update_rule_record(tenant_id, rule_id, changes, note=note, updated_by=user_id)
    except RuleValidationError as e:
        raise invalid_rule(e)
    if updated is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    row, conflicts = updated
    return rule_to_response(row, conflicts)


@router.delete("/rules/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rule_endpoint(rule_id: str, tenant_id: str = Depends(get_tenant_id)):
    if not delete_rule_record(tenant_id, rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)


@router.post("/rules/{rule_id}/toggle", response_model=RuleResponse)
def toggle_rule_endpoint(rule_id: str, tenant_id: str = Depends(get_tenant_id)):
    """Switch a rule between active and paused."""
    rule = toggle_rule(tenant_id, rule_id)
    if not rule:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    return rule_to_response(rule)


@router.post("/rules/{rule_id}/clone", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
def clone_rule_endpoint(
    rule_id: str,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Copy a rule; the copy starts paused."""
    try:
        cloned = clone_rule(tenant_id, rule_id, created_by=user_id)
    except RuleValidationError as e:
        raise invalid_rule(e)
    if cloned is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    row, conflicts = cloned
    return rule_to_response(row, conflicts)


@router.post("/rules/{rule_id}/test", response_model=DryRunResult)
def dry_run_rule_endpoint(rule_id: str, tenant_id: str = Depends(get_tenant_id)):
    """Dry run: which entities the rule would affect right now. Nothing is executed."""
    try:
        result = dry_run_rule(tenant_id, rule_id)
    except RuleValidationError as e:
        raise invalid_rule(e)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    return result


@router.get("/rules/{rule_id}/versions", response_model=RuleVersionListResponse)
def list_rule_versions_endpoint(rule_id: str, tenant_id: str = Depends(get_tenant_id)):
    versions = list_rule_versions(tenant_id, rule_id)
    if versions is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    return RuleVersionListResponse(rule_id=rule_id, versions=[_version_to_response(v) for v in versions])


@router.post("/rules/{rule_id}/rollback", response_model=RuleResponse)
def rollback_rule_endpoint(
    rule_id: str,
    request: RuleRollbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Restore an earlier version as a new version."""
    try:
        restored = rollback_rule(tenant_id, rule_id, request.version, note=request.note, updated_by=user_id)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RuleValidationError as e:
        raise invalid_rule(e)
    if restored is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=RULE_NOT_FOUND)
    row, conflicts = restored
    return rule_to_response(row, conflicts)


@router.get("/executions", response_model=ExecutionListResponse)
def list_executions_endpoint(
    rule_id: Optional[str] = Query(None, description="Filter by rule"),
    status: Optional[ExecutionStatus] = Query(None, description="Filter by status"),
    entity_id: Optional[str] = Query(None, description="Filter by entity"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of executions to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    tenant_id: str = Depends(get_tenant_id),
):
    """Execution history, newest first."""
    executions, total = list_executions(
        tenant_id,
        rule_id=rule_id,
        status=status.value if status else None,
        entity_id=entity_id,
        limit=limit,
        offset=offset,
    )
    return ExecutionListResponse(
        executions=[_execution_to_response(e) for e in executions],
        total=total,
        limit=limit,
        offset=offset,
    )
