# automation/actions/notify.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from automation.actions.base import ActionExecutor, ActionTarget
from automation.effects import deliver_notification, render_placeholders
from automation.rules.models import SendNotificationAction

logger = logging.getLogger(__name__)


class SendNotificationExecutor(ActionExecutor):
    """Fire-and-forget from the caller's view, but delivery failures are still recorded."""

    config: SendNotificationAction

    async def execute(self, target: ActionTarget) -> Dict[str, Any]:
        notification = {
            "title": render_placeholders(self.config.title, target.entity),
            "message": render_placeholders(self.config.message, target.entity),
            "severity": self.config.severity,
            "user_id": self.config.recipient_user_id or target.rule.created_by,
            "entity_type": target.event.entity_type,
            "entity_id": target.entity_id,
            "source_rule_id": target.rule.id,
        }
        result = await asyncio.to_thread(deliver_notification, target.store, target.tenant_id, notification)
        logger.info("Notification %s queued for %s", result["notification_id"], target)
        return {"success": True, "result": result}
