# crm_api/services/templates.py
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_

from automation.clock import utcnow
from automation.rules.factory import rule_to_payload
from automation.rules.models import ConflictReport
from automation.rules.templates import (
    BUILTIN_TEMPLATES,
    customize,
    export_template,
    import_template,
    normalize_definition,
    search_templates,
)
from crm_api.db.engine import get_session
from crm_api.db.models import Rule, Template, TemplateReview, TemplateVersion
from crm_api.db.store import rule_from_row
from crm_api.services.rules import create_rule_record

logger = logging.getLogger(__name__)

# (average, count)
Rating = Tuple[Optional[float], int]


def template_definition(row: Template) -> Dict[str, Any]:
    """Portable camelCase definition of a stored template."""
    return {
        "name": row.name,
        "description": row.description,
        "category": row.category,
        "triggerType": row.trigger_type,
        "triggerConfig": row.trigger_config,
        "actionType": row.action_type,
        "actionConfig": row.action_config,
        "conditions": row.conditions,
        "priority": row.priority,
        "tags": list(row.tags or []),
    }


def _apply_definition(row: Template, definition: Dict[str, Any]) -> Template:
    row.name = definition["name"]
    row.description = definition["description"]
    row.category = definition["category"]
    row.tags = definition["tags"]
    row.trigger_type = definition["triggerType"]
    row.trigger_config = definition["triggerConfig"]
    row.action_type = definition["actionType"]
    row.action_config = definition["actionConfig"]
    row.conditions = definition["conditions"]
    row.priority = definition["priority"]
    return row


def _visible(session, tenant_id: str, template_id: str) -> Optional[Template]:
    row = session.get(Template, template_id)
    if row is None or (row.tenant_id is not None and row.tenant_id != tenant_id):
        return None
    return row


def _owned(session, tenant_id: str, template_id: str) -> Optional[Template]:
    """
    Raises:
        PermissionError: public template the tenant can see but not change
    """
    row = _visible(session, tenant_id, template_id)
    if row is not None and row.tenant_id is None:
        raise PermissionError("Built-in templates cannot be modified")
    return row


def _ratings(session, template_ids: List[str]) -> Dict[str, Rating]:
    if not template_ids:
        return {}
    rows = (
        session.query(TemplateReview.template_id, func.avg(TemplateReview.rating), func.count(TemplateReview.id))
        .filter(TemplateReview.template_id.in_(template_ids))
        .group_by(TemplateReview.template_id)
        .all()
    )
    return {template_id: (round(float(avg), 2), count) for template_id, avg, count in rows}


def _create(
    session,
    definition: Dict[str, Any],
    tenant_id: Optional[str],
    created_by: Optional[str],
    template_id: Optional[str] = None,
    is_builtin: bool = False,
    changelog: str = "Initial version",
) -> Template:
    row = _apply_definition(
        Template(
            id=template_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            is_builtin=is_builtin,
            install_count=0,
            version=1,
            created_by=created_by,
        ),
        definition,
    )
    session.add(row)
    session.add(
        TemplateVersion(
            template_id=row.id,
            version=1,
            definition=definition,
            changelog=changelog,
            created_by=created_by,
        )
    )
    return row


def seed_builtin_templates() -> int:
    """Insert missing built-in templates. Idempotent; returns how many were added."""
    session = get_session()
    try:
        existing = {row[0] for row in session.query(Template.id).filter(Template.is_builtin.is_(True)).all()}
        added = 0
        for entry in BUILTIN_TEMPLATES:
            if entry["id"] in existing:
                continue
            _create(session, normalize_definition(entry), None, None, template_id=entry["id"], is_builtin=True)
            added += 1
        session.commit()
        if added:
            logger.info("Seeded %d built-in templates", added)
        return added
    finally:
        session.close()


def list_templates(
    tenant_id: str, category: Optional[str] = None, query: Optional[str] = None
) -> List[Tuple[Template, Rating]]:
    """Public templates plus the tenant's own, most installed first."""
    session = get_session()
    try:
        rows = (
            session.query(Template)
            .filter(or_(Template.tenant_id.is_(None), Template.tenant_id == tenant_id))
            .order_by(Template.install_count.desc(), Template.name)
            .all()
        )
        by_id = {row.id: row for row in rows}
        definitions = [{"id": row.id, **template_definition(row)} for row in rows]
        found = [by_id[d["id"]] for d in search_templates(definitions, query=query, category=category)]
        ratings = _ratings(session, [row.id for row in found])
        return [(row, ratings.get(row.id, (None, 0))) for row in found]
    finally:
        session.close()


def get_template(tenant_id: str, template_id: str) -> Optional[Tuple[Template, Rating]]:
    session = get_session()
    try:
        row = _visible(session, tenant_id, template_id)
        if row is None:
            return None
        return row, _ratings(session, [row.id]).get(row.id, (None, 0))
    finally:
        session.close()


def install_template(
    tenant_id: str,
    template_id: str,
    customizations: Optional[Dict[str, Any]] = None,
    created_by: Optional[str] = None,
) -> Optional[Tuple[Rule, List[ConflictReport]]]:
    """
    Create a rule for the tenant from a template.

    Raises:
        RuleValidationError: the customised rule is invalid; nothing is stored
    """
    session = get_session()
    try:
        row = _visible(session, tenant_id, template_id)
        if row is None:
            return None
        payload = customize(template_definition(row), customizations)
    finally:
        session.close()

    rule_row, conflicts = create_rule_record(tenant_id, payload, created_by=created_by, template_id=template_id)

    session = get_session()
    try:
        session.query(Template).filter(Template.id == template_id).update(
            {Template.install_count: Template.install_count + 1}, synchronize_session=False
        )
        session.commit()
    finally:
        session.close()

    logger.info("Installed template %s as rule %s for tenant %s", template_id, rule_row.id, tenant_id)
    return rule_row, conflicts


def save_rule_as_template(
    tenant_id: str,
    rule_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    category: str = "custom",
    tags: Optional[List[str]] = None,
    created_by: Optional[str] = None,
) -> Optional[Template]:
    """Capture a tenant rule as a private template. Returns None when the rule is unknown."""
    session = get_session()
    try:
        rule_row = session.get(Rule, rule_id)
        if rule_row is None or rule_row.tenant_id != tenant_id:
            return None
        payload = rule_to_payload(rule_from_row(rule_row))
        payload.update(
            {
                "name": name or payload["name"],
                "description": description if description is not None else payload["description"],
                "category": category,
                "tags": tags or [],
            }
        )
        row = _create(session, normalize_definition(payload), tenant_id, created_by)
        session.commit()
        logger.info("Saved rule %s as template %s", rule_id, row.id)
        return row
    finally:
        session.close()


def _new_version(session, row: Template, definition: Dict[str, Any], changelog: Optional[str], user_id) -> Template:
    _apply_definition(row, definition)
    row.version += 1
    row.updated_at = utcnow()
    session.add(
        TemplateVersion(
            template_id=row.id,
            version=row.version,
            definition=definition,
            changelog=changelog,
            created_by=user_id,
        )
    )
    session.commit()
    logger.info("Template %s updated to version %d", row.id, row.version)
    return row


def update_template(
    tenant_id: str,
    template_id: str,
    changes: Dict[str, Any],
    changelog: Optional[str] = None,
    updated_by: Optional[str] = None,
) -> Optional[Template]:
    """
    Owner-only edit recorded as a new version.

    Raises:
        PermissionError: built-in template
        RuleValidationError: the edited definition is invalid
    """
    session = get_session()
    try:
        row = _owned(session, tenant_id, template_id)
        if row is None:
            return None
        definition = template_definition(row)
        definition.update({k: v for k, v in changes.items() if v is not None})
        return _new_version(session, row, normalize_definition(definition), changelog, updated_by)
    finally:
        session.close()


def list_template_versions(tenant_id: str, template_id: str) -> Optional[List[TemplateVersion]]:
    session = get_session()
    try:
        if _visible(session, tenant_id, template_id) is None:
            return None
        return (
            session.query(TemplateVersion)
            .filter(TemplateVersion.template_id == template_id)
            .order_by(TemplateVersion.version.desc())
            .all()
        )
    finally:
        session.close()


def rollback_template(
    tenant_id: str,
    template_id: str,
    version: int,
    changelog: Optional[str] = None,
    updated_by: Optional[str] = None,
) -> Optional[Template]:
    """
    Copy an earlier version's definition into a new version.

    Raises:
        PermissionError: built-in template
        LookupError: unknown version
    """
    session = get_session()
    try:
        row = _owned(session, tenant_id, template_id)
        if row is None:
            return None
        snapshot = (
            session.query(TemplateVersion)
            .filter(TemplateVersion.template_id == template_id, TemplateVersion.version == version)
            .first()
        )
        if snapshot is None:
            raise LookupError(f"Template {template_id} has no version {version}")
        return _new_version(
            session,
            row,
            normalize_definition(snapshot.definition),
            changelog or f"Rolled back to version {version}",
            updated_by,
        )
    finally:
        session.close()


def export_template_json(tenant_id: str, template_id: str) -> Optional[Dict[str, Any]]:
    found = get_template(tenant_id, template_id)
    if found is None:
        return None
    return export_template(template_definition(found[0]))


def import_template_json(tenant_id: str, data: Any, created_by: Optional[str] = None) -> Template:
    """
    Create a tenant template from exported JSON.

    Raises:
        TemplateImportError: malformed or invalid document
    """
    definition = import_template(data)
    session = get_session()
    try:
        row = _create(session, definition, tenant_id, created_by, changelog="Imported")
        session.commit()
        logger.info("Imported template %s '%s' for tenant %s", row.id, row.name, tenant_id)
        return row
    finally:
        session.close()


def rate_template(
    tenant_id: str, template_id: str, user_id: str, rating: int, comment: Optional[str] = None
) -> Optional[Rating]:
    """One review per (template, tenant, user); rating again replaces it."""
    if not 1 <= rating <= 5:
        raise ValueError("rating must be between 1 and 5")
    session = get_session()
    try:
        if _visible(session, tenant_id, template_id) is None:
            return None
        review = (
            session.query(TemplateReview)
            .filter(
                TemplateReview.template_id == template_id,
                TemplateReview.tenant_id == tenant_id,
                TemplateReview.user_id == user_id,
            )
            .first()
        )
        if review is None:
            review = TemplateReview(template_id=template_id, tenant_id=tenant_id, user_id=user_id)
            session.add(review)
        review.rating = rating
        review.comment = comment
        session.commit()
        return _ratings(session, [template_id]).get(template_id, (None, 0))
    finally:
        session.close()


def get_template_rating(tenant_id: str, template_id: str) -> Optional[Rating]:
    found = get_template(tenant_id, template_id)
    return found[1] if found else None


def delete_template(tenant_id: str, template_id: str) -> bool:
    """
    Owner-only delete; versions and reviews go with it.

    Raises:
        PermissionError: built-in template
    """
    session = get_session()
    try:
        row = _owned(session, tenant_id, template_id)
        if row is None:
            return False
        session.query(TemplateVersion).filter(TemplateVersion.template_id == template_id).delete()
        session.query(TemplateReview).filter(TemplateReview.template_id == template_id).delete()
        session.delete(row)
        session.commit()
        logger.info("Deleted template %s", template_id)
        return True
    finally:
        session.close()
