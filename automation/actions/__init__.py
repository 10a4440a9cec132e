# automation/actions/__init__.py
from automation.actions.base import ActionExecutor, ActionResult, ActionTarget
from automation.actions.factory import create_executor, create_executor_from_model
from automation.actions.runner import execute_action

__all__ = [
    "ActionExecutor",
    "ActionResult",
    "ActionTarget",
    "execute_action",
    "create_executor",
    "create_executor_from_model",
]
