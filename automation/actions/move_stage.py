# automation/actions/move_stage.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from automation.actions.base import ActionExecutor, ActionTarget
from automation.exceptions import ActionFailure
from automation.rules.models import CrmEvent, EventType, MoveStageAction

logger = logging.getLogger(__name__)


class MoveStageExecutor(ActionExecutor):
    """Move a deal to another pipeline stage. Idempotent when already there."""

    serial = True
    config: MoveStageAction

    async def execute(self, target: ActionTarget) -> Dict[str, Any]:
        to_stage = self.config.to_stage

        # Re-read: an earlier rule for the same event may have moved it already.
        entity = await asyncio.to_thread(target.store.get_entity, target.tenant_id, target.entity_id)
        if entity is None:
            raise ActionFailure(f"Entity {target.entity_id} not found")

        current = entity.get("stage")
        if current == to_stage:
            logger.debug("%s already at stage %s", target, to_stage)
            return {"success": True, "result": {"changed": False, "stage": to_stage}}

        await asyncio.to_thread(target.store.set_stage, target.tenant_id, target.entity_id, to_stage)
        logger.info("Moved %s from %s to %s", target, current, to_stage)

        follow_up = CrmEvent(
            type=EventType.STAGE_CHANGED.value,
            tenant_id=target.tenant_id,
            entity_id=target.entity_id,
            entity_type=target.event.entity_type,
            payload={"from_stage": current, "to_stage": to_stage, "rule_id": target.rule.id},
            source="automation",
        )
        return {
            "success": True,
            "result": {"changed": True, "from_stage": current, "to_stage": to_stage},
            "events": [follow_up],
        }
