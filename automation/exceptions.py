# automation/exceptions.py
from __future__ import annotations

from typing import Iterable


class AutomationError(Exception):
    """Base class for automation engine errors."""


class RuleValidationError(AutomationError, ValueError):
    """A rule, trigger, action or condition payload is malformed."""

    def __init__(self, message: str, problems: Iterable[str] | None = None):
        self.problems = list(problems or [message])
        super().__init__(message)


class TemplateImportError(RuleValidationError):
    """An imported template JSON document is missing required fields."""


class WorkflowValidationError(AutomationError, ValueError):
    """A workflow definition is not executable."""

    def __init__(self, message: str, problems: Iterable[str] | None = None):
        self.problems = list(problems or [message])
        super().__init__(message)


class ActionFailure(AutomationError):
    """An action could not be applied to its target entity."""


class WorkflowNotFoundError(AutomationError, LookupError):
    """The referenced workflow does not exist for the tenant."""
