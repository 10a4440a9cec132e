# crm_api/routers/templates.py
from datetime import datetime
from typing import Any, Dict, Optional, cast

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status

from automation.exceptions import RuleValidationError
from crm_api.auth import get_tenant_id, get_user_id, verify_api_key
from crm_api.db.models import Template, TemplateVersion
from crm_api.routers.rules import invalid_rule, rule_to_response
from crm_api.schemas.templates import (
    TemplateCreateRequest,
    TemplateInstallRequest,
    TemplateInstallResponse,
    TemplateListResponse,
    TemplateRatingResponse,
    TemplateResponse,
    TemplateReviewRequest,
    TemplateRollbackRequest,
    TemplateUpdateRequest,
    TemplateVersionListResponse,
    TemplateVersionResponse,
)
from crm_api.services.templates import (
    Rating,
    delete_template,
    export_template_json,
    get_template,
    get_template_rating,
    import_template_json,
    install_template,
    list_template_versions,
    list_templates,
    rate_template,
    rollback_template,
    save_rule_as_template,
    update_template,
)

router = APIRouter(dependencies=[Depends(verify_api_key)])

TEMPLATE_NOT_FOUND = "Template not found"


def _template_to_response(template: Template, rating: Rating = (None, 0)) -> TemplateResponse:
    """Convert Template model to TemplateResponse schema."""
    return TemplateResponse(
        id=cast(str, template.id),
        tenant_id=cast(Optional[str], template.tenant_id),
        name=cast(str, template.name),
        description=cast(Optional[str], template.description),
        category=cast(str, template.category),
        tags=cast(list[str], template.tags or []),
        trigger_type=cast(str, template.trigger_type),
        trigger_config=cast(dict[str, Any], template.trigger_config),
        action_type=cast(str, template.action_type),
        action_config=cast(dict[str, Any], template.action_config),
        conditions=cast(dict[str, Any], template.conditions),
        priority=cast(int, template.priority),
        is_builtin=cast(bool, template.is_builtin),
        install_count=cast(int, template.install_count),
        version=cast(int, template.version),
        rating_average=rating[0],
        rating_count=rating[1],
        created_by=cast(Optional[str], template.created_by),
        created_at=cast(datetime, template.created_at),
        updated_at=cast(datetime, template.updated_at),
    )


def _version_to_response(version: TemplateVersion) -> TemplateVersionResponse:
    return TemplateVersionResponse(
        version=cast(int, version.version),
        definition=cast(dict[str, Any], version.definition),
        changelog=cast(Optional[str], version.changelog),
        created_by=cast(Optional[str], version.created_by),
        created_at=cast(datetime, version.created_at),
    )


def _forbidden(e: PermissionError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))


@router.get("/templates", response_model=TemplateListResponse)
def list_templates_endpoint(
    category: Optional[str] = Query(None, description="Filter by category"),
    q: Optional[str] = Query(None, description="Search name, description and tags"),
    tenant_id: str = Depends(get_tenant_id),
):
    """Built-in templates plus the tenant's own."""
    found = list_templates(tenant_id, category=category, query=q)
    return TemplateListResponse(
        templates=[_template_to_response(row, rating) for row, rating in found],
        total=len(found),
    )


@router.post("/templates/import", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
def import_template_endpoint(
    data: Any = Body(..., description="Exported template JSON"),
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    try:
        row = import_template_json(tenant_id, data, created_by=user_id)
    except RuleValidationError as e:
        raise invalid_rule(e)
    return _template_to_response(row)


@router.post("/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
def save_template_endpoint(
    request: TemplateCreateRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Save one of the tenant's rules as a template."""
    try:
        row = save_rule_as_template(
            tenant_id,
            request.rule_id,
            name=request.name,
            description=request.description,
            category=request.category,
            tags=request.tags,
            created_by=user_id,
        )
    except RuleValidationError as e:
        raise invalid_rule(e)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    return _template_to_response(row)


@router.get("/templates/{template_id}", response_model=TemplateResponse)
def get_template_endpoint(template_id: str, tenant_id: str = Depends(get_tenant_id)):
    found = get_template(tenant_id, template_id)
    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return _template_to_response(*found)


@router.post(
    "/templates/{template_id}/install",
    response_model=TemplateInstallResponse,
    status_code=status.HTTP_201_CREATED,
)
def install_template_endpoint(
    template_id: str,
    request: Optional[TemplateInstallRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Create a rule from a template, with optional customisations."""
    customizations = request.model_dump(by_alias=True, exclude_none=True) if request else None
    try:
        installed = install_template(tenant_id, template_id, customizations, created_by=user_id)
    except RuleValidationError as e:
        raise invalid_rule(e)
    if installed is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    row, conflicts = installed
    return TemplateInstallResponse(rule=rule_to_response(row, conflicts), conflicts=conflicts)


@router.put("/templates/{template_id}", response_model=TemplateResponse)
def update_template_endpoint(
    template_id: str,
    request: TemplateUpdateRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    changes = request.model_dump(by_alias=True, exclude_none=True)
    changelog = changes.pop("changelog", None)
    try:
        row = update_template(tenant_id, template_id, changes, changelog=changelog, updated_by=user_id)
    except PermissionError as e:
        raise _forbidden(e)
    except RuleValidationError as e:
        raise invalid_rule(e)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return _template_to_response(row)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template_endpoint(template_id: str, tenant_id: str = Depends(get_tenant_id)):
    try:
        deleted = delete_template(tenant_id, template_id)
    except PermissionError as e:
        raise _forbidden(e)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)


@router.get("/templates/{template_id}/versions", response_model=TemplateVersionListResponse)
def list_template_versions_endpoint(template_id: str, tenant_id: str = Depends(get_tenant_id)):
    versions = list_template_versions(tenant_id, template_id)
    if versions is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return TemplateVersionListResponse(template_id=template_id, versions=[_version_to_response(v) for v in versions])


@router.post("/templates/{template_id}/rollback", response_model=TemplateResponse)
def rollback_template_endpoint(
    template_id: str,
    request: TemplateRollbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    try:
        row = rollback_template(tenant_id, template_id, request.version, request.changelog, updated_by=user_id)
    except PermissionError as e:
        raise _forbidden(e)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except RuleValidationError as e:
        raise invalid_rule(e)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return _template_to_response(row)


@router.get("/templates/{template_id}/export")
def export_template_endpoint(template_id: str, tenant_id: str = Depends(get_tenant_id)) -> Dict[str, Any]:
    """Portable JSON for sharing the template."""
    exported = export_template_json(tenant_id, template_id)
    if exported is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return exported


@router.post("/templates/{template_id}/reviews", response_model=TemplateRatingResponse)
def review_template_endpoint(
    template_id: str,
    request: TemplateReviewRequest,
    tenant_id: str = Depends(get_tenant_id),
    user_id: Optional[str] = Depends(get_user_id),
):
    """Rate a template (one rating per user; rating again replaces it)."""
    if not user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-User-Id header is required to rate")
    rating = rate_template(tenant_id, template_id, user_id, request.rating, request.comment)
    if rating is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return TemplateRatingResponse(template_id=template_id, average=rating[0], count=rating[1])


@router.get("/templates/{template_id}/rating", response_model=TemplateRatingResponse)
def get_template_rating_endpoint(template_id: str, tenant_id: str = Depends(get_tenant_id)):
    rating = get_template_rating(tenant_id, template_id)
    if rating is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=TEMPLATE_NOT_FOUND)
    return TemplateRatingResponse(template_id=template_id, average=rating[0], count=rating[1])
