# crm_api/routers/suppression.py
import logging
from datetime import datetime
from typing import Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from automation.clock import ensure_utc
from crm_api.auth import get_tenant_id, verify_api_key
from crm_api.db.models import Suppression
from crm_api.schemas.suppression import (
    SuppressionBulkRequest,
    SuppressionBulkResponse,
    SuppressionCreateRequest,
    SuppressionListResponse,
    SuppressionResponse,
)
from crm_api.services.suppression import add_suppression, bulk_suppress, delete_suppression, list_suppressions

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_api_key)])


def _to_response(row: Suppression) -> SuppressionResponse:
    expires_at = cast(Optional[datetime], row.expires_at)
    return SuppressionResponse(
        id=cast(int, row.id),
        email=cast(str, row.email),
        reason=cast(str, row.reason),
        expires_at=ensure_utc(expires_at) if expires_at else None,
        created_at=ensure_utc(cast(datetime, row.created_at)),
    )


@router.get("/suppression", response_model=SuppressionListResponse)
def list_suppression_endpoint(
    reason: Optional[str] = Query(None, description="Filter by reason"),
    q: Optional[str] = Query(None, description="Part of an address"),
    limit: int = Query(500, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
):
    """Suppressed addresses, newest first."""
    rows, total = list_suppressions(tenant_id, reason=reason, q=q, limit=limit, offset=offset)
    return SuppressionListResponse(
        suppressions=[_to_response(row) for row in rows], total=total, limit=limit, offset=offset
    )


@router.post("/suppression", response_model=SuppressionResponse, status_code=status.HTTP_201_CREATED)
def add_suppression_endpoint(request: SuppressionCreateRequest, tenant_id: str = Depends(get_tenant_id)):
    """Suppress one address; an existing entry takes the new reason and expiry."""
    if "@" not in request.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Not an email address")
    return _to_response(add_suppression(tenant_id, request.email, request.reason, request.expires_at))


@router.post("/suppression/bulk", response_model=SuppressionBulkResponse)
def bulk_suppression_endpoint(request: SuppressionBulkRequest, tenant_id: str = Depends(get_tenant_id)):
    return SuppressionBulkResponse(added=bulk_suppress(tenant_id, request.emails, request.reason))


@router.delete("/suppression/{suppression_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_suppression_endpoint(suppression_id: int, tenant_id: str = Depends(get_tenant_id)):
    """Lift a suppression (e.g. after a re-opt-in)."""
    if not delete_suppression(tenant_id, suppression_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Suppression not found")
