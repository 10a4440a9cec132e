# automation/effects.py
"""
Entity side effects shared by rule actions and workflow nodes.

All helpers are synchronous and talk to a ``CrmStore``; async callers run
them through ``asyncio.to_thread``.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping, Optional

import requests

from automation.conf import (
    NOTIFICATION_TIMEOUT_SECONDS,
    NOTIFICATION_WEBHOOK_URL,
    SCORE_MAX,
    SCORE_MIN,
)
from automation.exceptions import ActionFailure
from automation.rules.conditions import resolve_field
from automation.store import CrmStore

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def render_placeholders(text: Optional[str], snapshot: Mapping[str, Any]) -> Optional[str]:
    """Fill ``{{field.path}}`` placeholders from the entity snapshot; unknown ones render empty."""
    if not text:
        return text

    def _sub(match: re.Match) -> str:
        value = resolve_field(snapshot, match.group(1))
        if isinstance(value, (list, tuple)):
            return ", ".join(str(item) for item in value)
        if not isinstance(value, (str, int, float, bool)):
            return ""
        return str(value)

    return _PLACEHOLDER.sub(_sub, text)


def clamp_score(score: float) -> int:
    return int(max(SCORE_MIN, min(SCORE_MAX, round(score))))


def apply_update(
    store: CrmStore,
    tenant_id: str,
    entity_id: str,
    update_type: str,
    field: Optional[str] = None,
    value: Any = None,
    tag: Optional[str] = None,
    delta: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Apply a field/tag/score mutation.

    ``field`` sets a literal value, ``tag`` appends a tag (no duplicates),
    ``score`` adds ``delta`` clamped to [SCORE_MIN, SCORE_MAX].
    """
    if store.get_entity(tenant_id, entity_id) is None:
        raise ActionFailure(f"Entity {entity_id} not found")

    if update_type == "field":
        store.set_field(tenant_id, entity_id, field, value)
        return {"field": field, "value": value}

    if update_type == "tag":
        added = store.add_tag(tenant_id, entity_id, tag.strip())
        return {"tag": tag.strip(), "added": added}

    if update_type == "score":
        previous = store.get_score(tenant_id, entity_id)
        score = clamp_score(previous + delta)
        if score != previous:
            store.set_score(tenant_id, entity_id, score)
        return {"previous_score": previous, "score": score, "delta": delta}

    raise ActionFailure(f"Unknown update type: {update_type}")


def deliver_notification(store: CrmStore, tenant_id: str, notification: Dict[str, Any]) -> Dict[str, Any]:
    """
    Persist an in-app notification and, when a webhook is configured, POST it.

    Raises:
        requests.RequestException: webhook delivery failed (the notification stays persisted)
    """
    notification_id = store.create_notification(tenant_id, notification)
    delivered = False

    if NOTIFICATION_WEBHOOK_URL:
        response = requests.post(
            NOTIFICATION_WEBHOOK_URL,
            json={"tenant_id": tenant_id, "notification_id": notification_id, **notification},
            timeout=NOTIFICATION_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        delivered = True
        logger.debug("Notification %s delivered to webhook", notification_id)

    return {"notification_id": notification_id, "webhook_delivered": delivered}
