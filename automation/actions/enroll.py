# automation/actions/enroll.py
from __future__ import annotations

import logging
from typing import Any, Dict

from automation.actions.base import ActionExecutor, ActionTarget
from automation.rules.models import EnrollSequenceAction
from automation.workflows.interpreter import start_enrollment

logger = logging.getLogger(__name__)


class EnrollSequenceExecutor(ActionExecutor):
    """Enroll the entity at the workflow's entry node and run its first cascade."""

    serial = True
    config: EnrollSequenceAction

    async def execute(self, target: ActionTarget) -> Dict[str, Any]:
        enrollment, created = await start_enrollment(
            target.store,
            target.tenant_id,
            self.config.workflow_id,
            target.entity_id,
            entity_type=target.event.entity_type,
            source_rule_id=target.rule.id,
        )
        if not created:
            logger.info("%s already enrolled in %s", target, self.config.workflow_id)
        return {
            "success": True,
            "result": {
                "enrollment_id": enrollment.enrollment_id,
                "created": created,
                "status": enrollment.status.value,
                "current_node_id": enrollment.current_node_id,
            },
        }
