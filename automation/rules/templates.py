# automation/rules/templates.py
"""Built-in rule template catalog and the portable template JSON codec."""
from __future__ import annotations

import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional

from automation.clock import utcnow
from automation.exceptions import RuleValidationError, TemplateImportError
from automation.rules.factory import create_action, create_conditions, create_trigger

CATEGORIES = ("lead_nurturing", "deal_management", "task_automation", "notifications", "custom")

# Keys of the portable export format, in order
EXPORT_KEYS = (
    "name",
    "description",
    "category",
    "triggerType",
    "triggerConfig",
    "actionType",
    "actionConfig",
    "conditions",
    "priority",
    "tags",
)

REQUIRED_IMPORT_KEYS = ("name", "triggerType", "actionType")


BUILTIN_TEMPLATES: List[Dict[str, Any]] = [
    # Lead nurturing
    {
        "id": "template-follow-up-no-reply",
        "name": "Auto Follow-up After No Reply",
        "description": "Create a follow-up task when a contact doesn't reply to your email within 3 days",
        "category": "lead_nurturing",
        "tags": ["follow-up", "email", "engagement"],
        "triggerType": "no_reply_after_days",
        "triggerConfig": {"days": 3},
        "actionType": "create_task",
        "actionConfig": {
            "title": "Follow up with {{name}}",
            "description": "No reply received after 3 days. Time to follow up.",
            "priority": "high",
        },
        "priority": 5,
    },
    {
        "id": "template-engage-opener",
        "name": "Engage Email Openers",
        "description": "Notify when a high-scoring contact opens your email",
        "category": "lead_nurturing",
        "tags": ["email", "engagement", "hot-lead"],
        "triggerType": "email_opened",
        "triggerConfig": {},
        "actionType": "send_notification",
        "actionConfig": {"title": "Hot Lead Alert", "message": "{{name}} just opened your email!", "severity": "high"},
        "conditions": {"logic": "AND", "rules": [{"field": "score", "operator": "greater_than", "value": 70}]},
        "priority": 8,
    },
    {
        "id": "template-reply-task",
        "name": "Create Task on Email Reply",
        "description": "Create a task to review and respond when a contact replies to your email",
        "category": "lead_nurturing",
        "tags": ["email", "response", "task"],
        "triggerType": "email_replied",
        "triggerConfig": {},
        "actionType": "create_task",
        "actionConfig": {
            "title": "Review reply from {{name}}",
            "description": "Contact has replied. Review and respond promptly.",
            "priority": "high",
        },
        "priority": 7,
    },
    # Deal management
    {
        "id": "template-meeting-to-proposal",
        "name": "Move to Proposal After Meeting",
        "description": "Advance deals in the meeting stage to Proposal once a meeting is held",
        "category": "deal_management",
        "tags": ["meeting", "stage", "progression"],
        "triggerType": "meeting_held",
        "triggerConfig": {},
        "actionType": "move_stage",
        "actionConfig": {"toStage": "proposal"},
        "conditions": {"logic": "AND", "rules": [{"field": "stage", "operator": "equals", "value": "meeting"}]},
        "priority": 6,
    },
    {
        "id": "template-high-value-alert",
        "name": "Alert on High-Value Deal",
        "description": "Notify when a deal value reaches $50,000 so it gets senior attention",
        "category": "deal_management",
        "tags": ["deal-value", "alert", "high-priority"],
        "triggerType": "deal_value_threshold",
        "triggerConfig": {"threshold": 50000},
        "actionType": "send_notification",
        "actionConfig": {
            "title": "High-Value Deal Alert",
            "message": "Deal {{name}} has reached ${{value}}. Requires senior attention.",
            "severity": "high",
        },
        "priority": 9,
    },
    {
        "id": "template-stale-deal-detection",
        "name": "Detect Stale Deals",
        "description": "Every morning, create a review task for open deals that sat in one stage for 14+ days",
        "category": "deal_management",
        "tags": ["stale", "review", "pipeline-health"],
        "triggerType": "scheduled",
        "triggerConfig": {"cron": "0 8 * * *", "timezone": "UTC", "scope": "entity"},
        "actionType": "create_task",
        "actionConfig": {
            "title": "Review stale deal: {{name}}",
            "description": "This deal has been inactive for 14+ days. Time to re-engage or close.",
            "priority": "medium",
        },
        "conditions": {
            "logic": "AND",
            "rules": [
                {"field": "entity_type", "operator": "equals", "value": "deal"},
                {"field": "days_in_stage", "operator": "greater_than", "value": 14},
                {"field": "stage", "operator": "not_equals", "value": "closed_won"},
                {"field": "stage", "operator": "not_equals", "value": "closed_lost"},
            ],
        },
        "priority": 4,
    },
    {
        "id": "template-proposal-to-negotiation",
        "name": "Advance to Negotiation",
        "description": "Move deals leaving Proposal straight to Negotiation when engagement is high",
        "category": "deal_management",
        "tags": ["stage", "progression", "automation"],
        "triggerType": "stage_entered",
        "triggerConfig": {"fromStage": "proposal"},
        "actionType": "move_stage",
        "actionConfig": {"toStage": "negotiation"},
        "conditions": {
            "logic": "AND",
            "rules": [{"field": "engagement_score", "operator": "greater_than", "value": 80}],
        },
        "priority": 5,
    },
    # Task automation
    {
        "id": "template-meeting-follow-up",
        "name": "Meeting Follow-up Task",
        "description": "Create a follow-up task due 1 day after a meeting is held",
        "category": "task_automation",
        "tags": ["meeting", "follow-up", "task"],
        "triggerType": "meeting_held",
        "triggerConfig": {},
        "actionType": "create_task",
        "actionConfig": {
            "title": "Follow up on meeting with {{name}}",
            "description": "Send meeting notes and next steps to attendees.",
            "priority": "high",
            "dueInDays": 1,
        },
        "priority": 7,
    },
    {
        "id": "template-daily-task-review",
        "name": "Daily Task Review Reminder",
        "description": "A reminder at 9am every day to review your tasks",
        "category": "task_automation",
        "tags": ["daily", "reminder", "productivity"],
        "triggerType": "scheduled",
        "triggerConfig": {"cron": "0 9 * * *", "timezone": "UTC"},
        "actionType": "send_notification",
        "actionConfig": {
            "title": "Daily Task Review",
            "message": "Good morning! Review your tasks for today and prioritize your work.",
            "severity": "low",
        },
        "priority": 3,
    },
    {
        "id": "template-overdue-task-alert",
        "name": "Overdue Task Alert",
        "description": "Every afternoon, flag records whose next step is overdue",
        "category": "task_automation",
        "tags": ["overdue", "alert", "deadline"],
        "triggerType": "scheduled",
        "triggerConfig": {"cron": "0 14 * * 1-5", "timezone": "UTC", "scope": "entity"},
        "actionType": "send_notification",
        "actionConfig": {
            "title": "Overdue Task Alert",
            "message": "{{name}} has {{overdue_count}} overdue task(s). Review and update them.",
            "severity": "medium",
        },
        "conditions": {
            "logic": "AND",
            "rules": [{"field": "overdue_count", "operator": "greater_than", "value": 0}],
        },
        "priority": 8,
    },
    # Notifications
    {
        "id": "template-weekly-pipeline-review",
        "name": "Weekly Pipeline Review",
        "description": "A notification every Monday at 9am to review pipeline health and key metrics",
        "category": "notifications",
        "tags": ["weekly", "pipeline", "review"],
        "triggerType": "scheduled",
        "triggerConfig": {"cron": "0 9 * * 1", "timezone": "UTC"},
        "actionType": "send_notification",
        "actionConfig": {
            "title": "Weekly Pipeline Review",
            "message": "Time for your weekly pipeline review. Check deal progress and identify blockers.",
        },
        "priority": 4,
    },
    {
        "id": "template-new-hot-lead",
        "name": "New Hot Lead Alert",
        "description": "Notify immediately when a lead leaves the New stage with a high lead score",
        "category": "notifications",
        "tags": ["hot-lead", "alert", "new-contact"],
        "triggerType": "stage_entered",
        "triggerConfig": {"fromStage": "new"},
        "actionType": "send_notification",
        "actionConfig": {
            "title": "New Hot Lead",
            "message": "New high-value contact: {{name}} (Score: {{score}})",
            "severity": "high",
        },
        "conditions": {"logic": "AND", "rules": [{"field": "score", "operator": "greater_than", "value": 85}]},
        "priority": 9,
    },
    {
        "id": "template-deal-won-celebration",
        "name": "Deal Won Celebration",
        "description": "Send a congratulatory notification when a deal is marked as won",
        "category": "notifications",
        "tags": ["win", "celebration", "success"],
        "triggerType": "stage_entered",
        "triggerConfig": {},
        "actionType": "send_notification",
        "actionConfig": {
            "title": "Deal Won!",
            "message": "Congratulations! {{name}} worth ${{value}} has been won!",
        },
        "conditions": {
            "logic": "AND",
            "rules": [{"field": "event.to_stage", "operator": "equals", "value": "closed_won"}],
        },
        "priority": 10,
    },
]


def normalize_definition(data: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate a template definition and return it in canonical form.

    Trigger/action configs are round-tripped through their typed variants so
    stored templates always hold valid, canonical camelCase configs.

    Raises:
        RuleValidationError: invalid trigger, action or conditions
    """
    name = data.get("name")
    if not name or not str(name).strip():
        raise RuleValidationError("name is required")

    trigger = create_trigger(data.get("triggerType"), data.get("triggerConfig"))
    action = create_action(data.get("actionType"), data.get("actionConfig"))
    conditions = create_conditions(data.get("conditions"))

    category = data.get("category") or "custom"
    if category not in CATEGORIES:
        raise RuleValidationError(f"Unknown category: {category}")

    tags = data.get("tags") or []
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        raise RuleValidationError("tags must be a list of strings")

    try:
        priority = int(data.get("priority") or 0)
    except (TypeError, ValueError) as e:
        raise RuleValidationError("priority must be an integer") from e

    return {
        "name": str(name).strip(),
        "description": data.get("description") or "",
        "category": category,
        "triggerType": trigger.type.value,
        "triggerConfig": trigger.to_config(),
        "actionType": action.type.value,
        "actionConfig": action.to_config(),
        "conditions": conditions.model_dump(mode="json"),
        "priority": priority,
        "tags": [t.strip() for t in tags if t.strip()],
    }


def export_template(definition: Mapping[str, Any]) -> Dict[str, Any]:
    """Flat portable JSON object with an ``exportedAt`` timestamp."""
    exported = {key: copy.deepcopy(definition.get(key)) for key in EXPORT_KEYS}
    exported["exportedAt"] = utcnow().isoformat()
    return exported


def import_template(data: Any) -> Dict[str, Any]:
    """
    Parse an exported template document.

    Raises:
        TemplateImportError: not an object, required keys missing, or invalid configs
    """
    if not isinstance(data, Mapping):
        raise TemplateImportError("Template JSON must be an object")

    missing = [key for key in REQUIRED_IMPORT_KEYS if not data.get(key)]
    if missing:
        raise TemplateImportError(
            f"Invalid template format: missing {', '.join(missing)}",
            [f"missing required field '{key}'" for key in missing],
        )

    try:
        return normalize_definition(data)
    except RuleValidationError as e:
        raise TemplateImportError(f"Invalid template: {e}", e.problems) from e


def customize(definition: Mapping[str, Any], customizations: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Rule payload for installing a template.

    ``triggerConfig``/``actionConfig`` customisations are merged into the
    template's configs; ``name``, ``description``, ``priority``, ``conditions``
    and ``status`` replace the template's values.
    """
    customizations = dict(customizations or {})
    payload = {
        "name": definition["name"],
        "description": definition.get("description"),
        "priority": definition.get("priority", 0),
        "triggerType": definition["triggerType"],
        "triggerConfig": dict(definition.get("triggerConfig") or {}),
        "actionType": definition["actionType"],
        "actionConfig": dict(definition.get("actionConfig") or {}),
        "conditions": copy.deepcopy(definition.get("conditions")),
    }
    for key in ("triggerConfig", "actionConfig"):
        payload[key].update(customizations.pop(key, None) or {})
    for key in ("name", "description", "priority", "conditions", "status"):
        if customizations.get(key) is not None:
            payload[key] = customizations[key]
    return payload


def search_templates(
    templates: Iterable[Mapping[str, Any]],
    query: Optional[str] = None,
    category: Optional[str] = None,
) -> List[Mapping[str, Any]]:
    """Filter by category and case-insensitive text over name, description and tags."""
    needle = (query or "").strip().lower()
    found = []
    for template in templates:
        if category and template.get("category") != category:
            continue
        if needle:
            haystack = [template.get("name") or "", template.get("description") or ""]
            haystack.extend(template.get("tags") or [])
            if not any(needle in text.lower() for text in haystack):
                continue
        found.append(template)
    return found
