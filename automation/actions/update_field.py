# automation/actions/update_field.py
from __future__ import annotations

import asyncio
from typing import Any, Dict

from automation.actions.base import ActionExecutor, ActionTarget
from automation.effects import apply_update
from automation.rules.models import UpdateFieldAction


class UpdateFieldExecutor(ActionExecutor):
    serial = True
    config: UpdateFieldAction

    async def execute(self, target: ActionTarget) -> Dict[str, Any]:
        result = await asyncio.to_thread(
            apply_update,
            target.store,
            target.tenant_id,
            target.entity_id,
            self.config.update_type,
            field=self.config.field,
            value=self.config.value,
            tag=self.config.tag,
            delta=self.config.delta,
        )
        return {"success": True, "result": {"update_type": self.config.update_type, **result}}
