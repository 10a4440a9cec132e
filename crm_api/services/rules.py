# crm_api/services/rules.py
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from automation.clock import utcnow
from automation.exceptions import RuleValidationError
from automation.rules.conflicts import detect_conflicts
from automation.rules.dry_run import DryRunResult, simulate_rule
from automation.rules.factory import create_rule, rule_to_payload
from automation.rules.models import AutomationRule, ConflictReport, RuleStatus
from crm_api.db.engine import get_session
from crm_api.db.models import Execution, Rule, RuleVersion
from crm_api.db.store import SqlCrmStore, apply_rule_to_row, rule_from_row

logger = logging.getLogger(__name__)

COPY_SUFFIX = " (copy)"


def _get_row(session, tenant_id: str, rule_id: str) -> Optional[Rule]:
    # Other tenants' rules are indistinguishable from missing ones.
    row = session.get(Rule, rule_id)
    if row is None or row.tenant_id != tenant_id:
        return None
    return row


def _conflicts_for(rule: AutomationRule) -> List[ConflictReport]:
    active = SqlCrmStore().list_active_rules(rule.tenant_id)
    conflicts = detect_conflicts(rule, active)
    for conflict in conflicts:
        logger.warning("Rule %s: %s", rule.id, conflict.message)
    return conflicts


def _add_version(session, rule: AutomationRule, note: Optional[str], created_by: Optional[str]) -> None:
    session.add(
        RuleVersion(
            rule_id=rule.id,
            tenant_id=rule.tenant_id,
            version=rule.version,
            definition=rule_to_payload(rule),
            note=note,
            created_by=created_by,
        )
    )


def create_rule_record(
    tenant_id: str,
    payload: Dict[str, Any],
    created_by: Optional[str] = None,
    template_id: Optional[str] = None,
) -> Tuple[Rule, List[ConflictReport]]:
    """
    Validate and persist a new rule (version 1).

    Returns:
        (stored row, advisory conflicts with the tenant's active rules)

    Raises:
        RuleValidationError: invalid payload; nothing is stored
    """
    rule = create_rule(tenant_id, payload, created_by=created_by)
    conflicts = _conflicts_for(rule)

    session = get_session()
    try:
        row = apply_rule_to_row(rule, Rule(id=rule.id, created_at=rule.created_at, template_id=template_id))
        session.add(row)
        _add_version(session, rule, "created", created_by)
        session.commit()
        logger.info("Created rule %s '%s' for tenant %s", rule.id, rule.name, tenant_id)
        return row, conflicts
    finally:
        session.close()


def get_rule(tenant_id: str, rule_id: str) -> Optional[Rule]:
    session = get_session()
    try:
        return _get_row(session, tenant_id, rule_id)
    finally:
        session.close()


def list_rules(tenant_id: str, status: Optional[str] = None, trigger_type: Optional[str] = None) -> List[Rule]:
    session = get_session()
    try:
        query = session.query(Rule).filter(Rule.tenant_id == tenant_id)
        if status:
            query = query.filter(Rule.status == status)
        if trigger_type:
            query = query.filter(Rule.trigger_type == trigger_type)
        return query.order_by(Rule.priority.desc(), Rule.created_at).all()
    finally:
        session.close()


def _save_new_version(
    session,
    row: Rule,
    payload: Dict[str, Any],
    note: Optional[str],
    updated_by: Optional[str],
) -> Tuple[Rule, List[ConflictReport]]:
    current = rule_from_row(row)
    rule = create_rule(
        row.tenant_id,
        payload,
        id=row.id,
        version=row.version + 1,
        created_at=current.created_at,
        created_by=current.created_by,
        updated_at=utcnow(),
    )
    conflicts = _conflicts_for(rule)
    apply_rule_to_row(rule, row)
    _add_version(session, rule, note, updated_by)
    session.commit()
    logger.info("Rule %s updated to version %d", rule.id, rule.version)
    return row, conflicts


def update_rule_record(
    tenant_id: str,
    rule_id: str,
    changes: Dict[str, Any],
    note: Optional[str] = None,
    updated_by: Optional[str] = None,
) -> Optional[Tuple[Rule, List[ConflictReport]]]:
    """
    Apply a partial update (camelCase keys) as a new rule version.

    Returns None when the rule does not exist for the tenant.

    Raises:
        RuleValidationError: the merged rule is invalid; nothing is stored
    """
    session = get_session()
    try:
        row = _get_row(session, tenant_id, rule_id)
        if row is None:
            return None
        payload = rule_to_payload(rule_from_row(row))
        # A new trigger/action type starts from an empty config.
        if changes.get("triggerType") not in (None, payload["triggerType"]):
            payload["triggerConfig"] = {}
        if changes.get("actionType") not in (None, payload["actionType"]):
            payload["actionConfig"] = {}
        payload.update({k: v for k, v in changes.items() if v is not None})
        return _save_new_version(session, row, payload, note, updated_by)
    finally:
        session.close()


def delete_rule_record(tenant_id: str, rule_id: str) -> bool:
    """Delete a rule and its versions. Execution history is kept."""
    session = get_session()
    try:
        row = _get_row(session, tenant_id, rule_id)
        if row is None:
            return False
        session.query(RuleVersion).filter(RuleVersion.rule_id == rule_id).delete()
        session.delete(row)
        session.commit()
        logger.info("Deleted rule %s", rule_id)
        return True
    finally:
        session.close()


def toggle_rule(tenant_id: str, rule_id: str) -> Optional[Rule]:
    """Flip active <-> paused."""
    session = get_session()
    try:
        row = _get_row(session, tenant_id, rule_id)
        if row is None:
            return None
        row.status = RuleStatus.PAUSED.value if row.status == RuleStatus.ACTIVE.value else RuleStatus.ACTIVE.value
        row.updated_at = utcnow()
        session.commit()
        logger.info("Rule %s is now %s", rule_id, row.status)
        return row
    finally:
        session.close()


def clone_rule(
    tenant_id: str, rule_id: str, created_by: Optional[str] = None
) -> Optional[Tuple[Rule, List[ConflictReport]]]:
    """Copy a rule as a new paused rule named '<name> (copy)'."""
    source = get_rule(tenant_id, rule_id)
    if source is None:
        return None
    payload = rule_to_payload(rule_from_row(source))
    payload["name"] = payload["name"][: 200 - len(COPY_SUFFIX)] + COPY_SUFFIX
    payload["status"] = RuleStatus.PAUSED.value
    return create_rule_record(tenant_id, payload, created_by=created_by, template_id=source.template_id)


def preview_conflicts(tenant_id: str, payload: Dict[str, Any], rule_id: Optional[str] = None) -> List[ConflictReport]:
    """Conflicts the payload would raise if saved (as ``rule_id`` when editing). Nothing is stored."""
    overrides = {"id": rule_id} if rule_id else {}
    candidate = create_rule(tenant_id, payload, **overrides)
    return detect_conflicts(candidate, SqlCrmStore().list_active_rules(tenant_id))


def list_rule_versions(tenant_id: str, rule_id: str) -> Optional[List[RuleVersion]]:
    session = get_session()
    try:
        if _get_row(session, tenant_id, rule_id) is None:
            return None
        return (
            session.query(RuleVersion)
            .filter(RuleVersion.rule_id == rule_id)
            .order_by(RuleVersion.version.desc())
            .all()
        )
    finally:
        session.close()


def rollback_rule(
    tenant_id: str,
    rule_id: str,
    version: int,
    note: Optional[str] = None,
    updated_by: Optional[str] = None,
) -> Optional[Tuple[Rule, List[ConflictReport]]]:
    """
    Restore an earlier definition as a new version. The rule keeps its current status.

    Raises:
        LookupError: the requested version does not exist
    """
    session = get_session()
    try:
        row = _get_row(session, tenant_id, rule_id)
        if row is None:
            return None
        snapshot = (
            session.query(RuleVersion)
            .filter(RuleVersion.rule_id == rule_id, RuleVersion.version == version)
            .first()
        )
        if snapshot is None:
            raise LookupError(f"Rule {rule_id} has no version {version}")
        definition = {**snapshot.definition, "status": row.status}
        return _save_new_version(session, row, definition, note or f"Rolled back to version {version}", updated_by)
    finally:
        session.close()


def list_executions(
    tenant_id: str,
    rule_id: Optional[str] = None,
    status: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Execution], int]:
    """Newest first."""
    session = get_session()
    try:
        query = session.query(Execution).filter(Execution.tenant_id == tenant_id)
        if rule_id:
            query = query.filter(Execution.rule_id == rule_id)
        if status:
            query = query.filter(Execution.status == status)
        if entity_id:
            query = query.filter(Execution.entity_id == entity_id)

        total = query.count()
        executions = query.order_by(Execution.log_id.desc()).limit(limit).offset(offset).all()
        return executions, total
    finally:
        session.close()


def dry_run_rule(tenant_id: str, rule_id: str) -> Optional[DryRunResult]:
    """Dry-run a stored rule over the tenant's current entities."""
    row = get_rule(tenant_id, rule_id)
    if row is None:
        return None
    try:
        rule = rule_from_row(row)
    except RuleValidationError:
        logger.error("Stored rule %s is invalid", rule_id, exc_info=True)
        raise
    return asyncio.run(simulate_rule(rule, SqlCrmStore()))
