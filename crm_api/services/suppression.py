# crm_api/services/suppression.py
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from crm_api.db.engine import get_session
from crm_api.db.models import Suppression
from crm_api.db.store import SqlCrmStore

logger = logging.getLogger(__name__)


def list_suppressions(
    tenant_id: str,
    reason: Optional[str] = None,
    q: Optional[str] = None,
    limit: int = 500,
    offset: int = 0,
) -> Tuple[List[Suppression], int]:
    """Newest first. ``q`` matches part of the address."""
    session = get_session()
    try:
        query = session.query(Suppression).filter(Suppression.tenant_id == tenant_id)
        if reason:
            query = query.filter(Suppression.reason == reason)
        if q:
            query = query.filter(Suppression.email.ilike(f"%{q.strip().lower()}%"))
        total = query.count()
        rows = query.order_by(Suppression.created_at.desc(), Suppression.id.desc()).limit(limit).offset(offset).all()
        return rows, total
    finally:
        session.close()


def add_suppression(
    tenant_id: str, email: str, reason: str = "manual", expires_at: Optional[datetime] = None
) -> Suppression:
    """List (or re-list with a new reason and expiry) one address."""
    SqlCrmStore().suppress(tenant_id, email, reason, expires_at)
    session = get_session()
    try:
        return (
            session.query(Suppression)
            .filter(Suppression.tenant_id == tenant_id, Suppression.email == email.strip().lower())
            .one()
        )
    finally:
        session.close()


def bulk_suppress(tenant_id: str, emails: Iterable[str], reason: str = "manual") -> int:
    """List many addresses; already-listed ones keep their entry. Returns how many were added."""
    addresses = {e.strip().lower() for e in emails if e and e.strip()}
    if not addresses:
        return 0
    session = get_session()
    try:
        existing = {
            row[0]
            for row in session.query(Suppression.email).filter(
                Suppression.tenant_id == tenant_id, Suppression.email.in_(sorted(addresses))
            )
        }
        added = sorted(addresses - existing)
        session.add_all(Suppression(tenant_id=tenant_id, email=address, reason=reason) for address in added)
        session.commit()
        logger.info("Bulk suppressed %d address(es) for tenant %s (%s)", len(added), tenant_id, reason)
        return len(added)
    finally:
        session.close()


def delete_suppression(tenant_id: str, suppression_id: int) -> bool:
    session = get_session()
    try:
        row = session.get(Suppression, suppression_id)
        if row is None or row.tenant_id != tenant_id:
            return False
        session.delete(row)
        session.commit()
        logger.info("Removed suppression of %s for tenant %s", row.email, tenant_id)
        return True
    finally:
        session.close()
