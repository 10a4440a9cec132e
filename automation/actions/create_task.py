# automation/actions/create_task.py
from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict

from automation.actions.base import ActionExecutor, ActionTarget
from automation.clock import utcnow
from automation.effects import render_placeholders
from automation.rules.models import CreateTaskAction

logger = logging.getLogger(__name__)


class CreateTaskExecutor(ActionExecutor):
    config: CreateTaskAction

    async def execute(self, target: ActionTarget) -> Dict[str, Any]:
        due_at = None
        if self.config.due_in_days is not None:
            due_at = (utcnow() + timedelta(days=self.config.due_in_days)).isoformat()

        task = {
            "title": render_placeholders(self.config.title, target.entity),
            "description": render_placeholders(self.config.description, target.entity),
            "priority": self.config.priority,
            "due_at": due_at,
            "assignee_id": self.config.assignee_id or target.rule.created_by,
            "entity_type": target.event.entity_type,
            "source_rule_id": target.rule.id,
        }
        task_id = await asyncio.to_thread(target.store.create_task, target.tenant_id, target.entity_id, task)
        logger.info("Created task %s for %s: %s", task_id, target, task["title"])
        return {"success": True, "result": {"task_id": task_id, "title": task["title"], "due_at": due_at}}
