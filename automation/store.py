# automation/store.py
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from automation.rules.models import AutomationRule, CrmEvent, RuleExecution, TriggerHistory
from automation.workflows.models import Enrollment, WorkflowDefinition

# Entity snapshot: plain dict with at least ``id`` and ``entity_type``; core
# columns (stage, value, score, email, tags, last_outbound_at, last_reply_at)
# at top level and custom fields both merged at top level and under ``fields``.
EntitySnapshot = Dict[str, Any]


class CrmStore(ABC):
    """
    Persistence boundary of the automation core.

    Methods are synchronous; the async dispatcher and interpreter call them
    through ``asyncio.to_thread`` so the event loop never blocks on I/O.
    Every method is tenant-scoped.
    """

    # -- rules ---------------------------------------------------------

    @abstractmethod
    def list_active_rules(self, tenant_id: str) -> List[AutomationRule]:
        """Snapshot of the tenant's active rules."""

    @abstractmethod
    def get_trigger_history(self, tenant_id: str, rule: AutomationRule, entity_id: str) -> TriggerHistory:
        """Execution history of ``rule`` for one entity."""

    @abstractmethod
    def record_executions(self, executions: Sequence[RuleExecution]) -> None:
        """Append one event's executions, preserving their order."""

    # -- entities ------------------------------------------------------

    @abstractmethod
    def get_entity(self, tenant_id: str, entity_id: str) -> Optional[EntitySnapshot]:
        ...

    @abstractmethod
    def list_entities(self, tenant_id: str, entity_type: Optional[str] = None) -> List[EntitySnapshot]:
        ...

    @abstractmethod
    def set_stage(self, tenant_id: str, entity_id: str, stage: str) -> None:
        ...

    @abstractmethod
    def set_field(self, tenant_id: str, entity_id: str, field: str, value: Any) -> None:
        ...

    @abstractmethod
    def add_tag(self, tenant_id: str, entity_id: str, tag: str) -> bool:
        """Append ``tag``; returns False if it was already present."""

    @abstractmethod
    def get_score(self, tenant_id: str, entity_id: str) -> int:
        ...

    @abstractmethod
    def set_score(self, tenant_id: str, entity_id: str, score: int) -> None:
        ...

    # -- side effects --------------------------------------------------

    @abstractmethod
    def create_task(self, tenant_id: str, entity_id: str, task: Dict[str, Any]) -> str:
        """Persist a task; returns its id."""

    @abstractmethod
    def create_notification(self, tenant_id: str, notification: Dict[str, Any]) -> str:
        """Persist an in-app notification; returns its id."""

    @abstractmethod
    def send_email(self, tenant_id: str, entity_id: str, email: Dict[str, Any]) -> str:
        """Record an outbound email and bump the entity's ``last_outbound_at``."""

    @abstractmethod
    def is_suppressed(self, tenant_id: str, email: str) -> bool:
        ...

    @abstractmethod
    def suppress(self, tenant_id: str, email: str, reason: str, expires_at: Optional[datetime] = None) -> bool:
        """List an address as unsendable, permanently unless ``expires_at`` is given."""

    # -- events --------------------------------------------------------

    @abstractmethod
    def record_event(self, event: CrmEvent) -> bool:
        """Store an event; returns False when its dedupe key was already seen."""

    @abstractmethod
    def count_events(self, tenant_id: str, entity_id: str, event_type: str, since: datetime) -> int:
        ...

    # -- workflows -----------------------------------------------------

    @abstractmethod
    def get_workflow(self, tenant_id: str, workflow_id: str) -> Optional[WorkflowDefinition]:
        ...

    @abstractmethod
    def get_active_enrollment(self, tenant_id: str, workflow_id: str, entity_id: str) -> Optional[Enrollment]:
        """The entity's active or paused enrollment in a workflow, if any."""

    @abstractmethod
    def save_enrollment(self, enrollment: Enrollment) -> None:
        ...

    @abstractmethod
    def list_due_enrollments(self, now: datetime, limit: int) -> List[Enrollment]:
        """Active enrollments whose ``next_check_at`` is at or before ``now``."""

    @abstractmethod
    def list_active_enrollments(self, tenant_id: str, entity_id: str) -> List[Enrollment]:
        ...
