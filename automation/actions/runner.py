# automation/actions/runner.py
from __future__ import annotations

import logging
import time

from automation.actions.base import ActionExecutor, ActionResult, ActionTarget

logger = logging.getLogger(__name__)


async def execute_action(executor: ActionExecutor, target: ActionTarget) -> ActionResult:
    """
    Execute a single action against its target.

    This is the only entry point the dispatcher uses. It:
    1. Validates the executor's config
    2. Runs the action
    3. Returns a standardized result

    Never raises: any exception becomes a failed ActionResult with the error
    text, so one rule's failure cannot abort its siblings.
    """
    start_time = time.time()

    try:
        executor.validate_input()

        result_data = await executor.execute(target)

        duration_ms = int((time.time() - start_time) * 1000)
        return ActionResult(
            success=result_data.get("success", True),
            result=result_data.get("result"),
            error=result_data.get("error"),
            duration_ms=duration_ms,
            emitted_events=result_data.get("events") or [],
        )

    except ValueError as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error("Action %s rejected for %s: %s", executor.config.type.value, target, e)
        return ActionResult(success=False, error=str(e), duration_ms=duration_ms)

    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error("Action %s failed for %s: %s", executor.config.type.value, target, e, exc_info=True)
        return ActionResult(success=False, error=str(e) or type(e).__name__, duration_ms=duration_ms)
