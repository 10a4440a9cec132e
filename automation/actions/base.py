# automation/actions/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from automation.rules.models import ActionConfig, AutomationRule, CrmEvent, ExecutionStatus
from automation.store import CrmStore, EntitySnapshot


class ActionTarget(NamedTuple):
    """What an action runs against: the event, its entity snapshot and the firing rule."""

    store: CrmStore
    rule: AutomationRule
    event: CrmEvent
    entity: EntitySnapshot

    @property
    def tenant_id(self) -> str:
        return self.event.tenant_id

    @property
    def entity_id(self) -> str:
        return self.event.entity_id

    def __str__(self) -> str:
        return f"{self.event.entity_type}:{self.event.entity_id}"


class ActionResult(BaseModel):
    """Standard action execution result."""

    success: bool = Field(..., description="Whether the action was applied")
    result: Optional[Dict[str, Any]] = Field(None, description="Action-specific detail")
    error: Optional[str] = Field(None, description="Error message if execution failed")
    duration_ms: Optional[int] = Field(None, description="Execution duration in milliseconds")
    emitted_events: List[CrmEvent] = Field(
        default_factory=list, description="Follow-up events caused by the action (e.g. stage_changed)"
    )

    @property
    def status(self) -> ExecutionStatus:
        return ExecutionStatus.SUCCESS if self.success else ExecutionStatus.FAILED


class ActionExecutor(ABC):
    """
    Base class for all rule actions.

    An executor applies ONE side effect to the target entity. Executors that
    mutate the entity set ``serial = True``; the dispatcher runs those one at
    a time, in rule priority order, for a given event.
    """

    serial: bool = False

    def __init__(self, config: ActionConfig):
        self.config = config

    @abstractmethod
    async def execute(self, target: ActionTarget) -> Dict[str, Any]:
        """
        Apply the action.

        Returns:
            Dictionary with execution results:
            - success: bool
            - result: Dict (action-specific detail)
            - error: str | None
            - events: List[CrmEvent] (optional follow-up events)
        """
        pass

    def validate_input(self) -> None:
        """
        Re-check the config before running.
        Raises ValueError if the config cannot be executed.
        """
        if self.config is None:
            raise ValueError(f"{type(self).__name__} has no config")
