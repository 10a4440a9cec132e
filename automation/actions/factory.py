# automation/actions/factory.py
from __future__ import annotations

from typing import Any, Dict, Optional

from automation.actions.base import ActionExecutor
from automation.actions.create_task import CreateTaskExecutor
from automation.actions.enroll import EnrollSequenceExecutor
from automation.actions.move_stage import MoveStageExecutor
from automation.actions.notify import SendNotificationExecutor
from automation.actions.update_field import UpdateFieldExecutor
from automation.rules.factory import create_action
from automation.rules.models import (
    ActionConfig,
    CreateTaskAction,
    EnrollSequenceAction,
    MoveStageAction,
    SendNotificationAction,
    UpdateFieldAction,
)


def create_executor(action_type: str, action_config: Optional[Dict[str, Any]] = None) -> ActionExecutor:
    """
    Create an executor from a flat ``actionType``/``actionConfig`` pair.

    Raises:
        RuleValidationError: If the action type is unsupported or the config is invalid
    """
    return create_executor_from_model(create_action(action_type, action_config))


def create_executor_from_model(config: ActionConfig) -> ActionExecutor:
    """
    Create an executor for a validated action config.

    Raises:
        ValueError: If the action type has no executor
    """
    if isinstance(config, MoveStageAction):
        return MoveStageExecutor(config)
    elif isinstance(config, CreateTaskAction):
        return CreateTaskExecutor(config)
    elif isinstance(config, SendNotificationAction):
        return SendNotificationExecutor(config)
    elif isinstance(config, EnrollSequenceAction):
        return EnrollSequenceExecutor(config)
    elif isinstance(config, UpdateFieldAction):
        return UpdateFieldExecutor(config)
    else:
        raise ValueError(f"Action type {config.type} not yet implemented")
