# crm_api/services/workflows.py
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from automation.clock import utcnow
from automation.exceptions import WorkflowValidationError
from automation.workflows.interpreter import start_enrollment
from automation.workflows.models import (
    Enrollment,
    EnrollmentStatus,
    WorkflowDefinition,
    WorkflowStatus,
    validate_definition,
)
from crm_api.db.engine import get_session
from crm_api.db.models import Workflow, WorkflowEnrollment
from crm_api.db.store import SqlCrmStore, enrollment_from_row, workflow_from_row

logger = logging.getLogger(__name__)


def _get_row(session, tenant_id: str, workflow_id: str) -> Optional[Workflow]:
    row = session.get(Workflow, workflow_id)
    if row is None or row.tenant_id != tenant_id:
        return None
    return row


def _check_activation(definition: WorkflowDefinition) -> List[str]:
    """
    Problems of ``definition``; an active definition must have none.

    Raises:
        WorkflowValidationError: active definition with problems
    """
    problems = validate_definition(definition)
    if definition.status == WorkflowStatus.ACTIVE and problems:
        raise WorkflowValidationError(
            f"Workflow '{definition.name}' cannot be active: {problems[0]}", problems
        )
    return problems


def _apply(row: Workflow, definition: WorkflowDefinition) -> Workflow:
    data = definition.model_dump(mode="json")
    row.name = definition.name
    row.description = definition.description
    row.status = definition.status.value
    row.version = definition.version
    row.entry_node_id = definition.entry_node_id
    row.nodes = data["nodes"]
    return row


def create_workflow(tenant_id: str, data: Dict[str, Any]) -> Tuple[Workflow, List[str]]:
    """
    Store a workflow definition.

    Drafts may carry validation problems; they are returned alongside the row.

    Raises:
        WorkflowValidationError: requested ``active`` with problems
    """
    definition = WorkflowDefinition(workflow_id=str(uuid.uuid4()), tenant_id=tenant_id, **data)
    problems = _check_activation(definition)

    session = get_session()
    try:
        row = _apply(Workflow(workflow_id=definition.workflow_id, tenant_id=tenant_id), definition)
        session.add(row)
        session.commit()
        logger.info("Created workflow %s '%s' (%s)", row.workflow_id, row.name, row.status)
        return row, problems
    finally:
        session.close()


def get_workflow(tenant_id: str, workflow_id: str) -> Optional[Workflow]:
    session = get_session()
    try:
        return _get_row(session, tenant_id, workflow_id)
    finally:
        session.close()


def list_workflows(tenant_id: str, status: Optional[str] = None) -> List[Workflow]:
    session = get_session()
    try:
        query = session.query(Workflow).filter(Workflow.tenant_id == tenant_id)
        if status:
            query = query.filter(Workflow.status == status)
        return query.order_by(Workflow.created_at.desc()).all()
    finally:
        session.close()


def update_workflow(
    tenant_id: str, workflow_id: str, changes: Dict[str, Any]
) -> Optional[Tuple[Workflow, List[str]]]:
    """
    Replace parts of the definition and bump its version.

    Raises:
        WorkflowValidationError: the workflow is active and the change would break it
    """
    session = get_session()
    try:
        row = _get_row(session, tenant_id, workflow_id)
        if row is None:
            return None
        data = workflow_from_row(row).model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        data["version"] = row.version + 1
        definition = WorkflowDefinition(**data)
        problems = _check_activation(definition)
        _apply(row, definition)
        row.updated_at = utcnow()
        session.commit()
        logger.info("Workflow %s updated to version %d", workflow_id, row.version)
        return row, problems
    finally:
        session.close()


def set_workflow_status(tenant_id: str, workflow_id: str, status: WorkflowStatus) -> Optional[Workflow]:
    """
    Raises:
        WorkflowValidationError: activating a definition with problems
    """
    session = get_session()
    try:
        row = _get_row(session, tenant_id, workflow_id)
        if row is None:
            return None
        definition = workflow_from_row(row)
        definition.status = WorkflowStatus(status)
        _check_activation(definition)
        row.status = definition.status.value
        row.updated_at = utcnow()
        session.commit()
        logger.info("Workflow %s is now %s", workflow_id, row.status)
        return row
    finally:
        session.close()


def validate_workflow(tenant_id: str, workflow_id: str) -> Optional[List[str]]:
    row = get_workflow(tenant_id, workflow_id)
    if row is None:
        return None
    return validate_definition(workflow_from_row(row))


def delete_workflow(tenant_id: str, workflow_id: str) -> bool:
    """Delete a definition and stop its unfinished enrollments."""
    session = get_session()
    try:
        row = _get_row(session, tenant_id, workflow_id)
        if row is None:
            return False
        now = utcnow()
        stopped = (
            session.query(WorkflowEnrollment)
            .filter(
                WorkflowEnrollment.workflow_id == workflow_id,
                WorkflowEnrollment.status.in_([EnrollmentStatus.ACTIVE.value, EnrollmentStatus.PAUSED.value]),
            )
            .update(
                {
                    WorkflowEnrollment.status: EnrollmentStatus.STOPPED.value,
                    WorkflowEnrollment.outcome: "missing_workflow",
                    WorkflowEnrollment.completed_at: now,
                    WorkflowEnrollment.next_check_at: None,
                },
                synchronize_session=False,
            )
        )
        session.delete(row)
        session.commit()
        logger.info("Deleted workflow %s (%d enrollment(s) stopped)", workflow_id, stopped)
        return True
    finally:
        session.close()


# ----------------------------------------------------------------------
# Enrollments
# ----------------------------------------------------------------------


def enroll_entity(
    tenant_id: str,
    workflow_id: str,
    entity_id: str,
    entity_type: str = "contact",
    initial_state: Optional[Dict[str, Any]] = None,
) -> Tuple[Enrollment, bool]:
    """
    Manually enroll an entity and run its first cascade.

    Raises:
        WorkflowNotFoundError: unknown workflow
        WorkflowValidationError: workflow not active
    """
    return asyncio.run(
        start_enrollment(
            SqlCrmStore(),
            tenant_id,
            workflow_id,
            entity_id,
            entity_type=entity_type,
            initial_state=initial_state,
        )
    )


def list_enrollments(
    tenant_id: str,
    workflow_id: Optional[str] = None,
    entity_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[Enrollment], int]:
    session = get_session()
    try:
        query = session.query(WorkflowEnrollment).filter(WorkflowEnrollment.tenant_id == tenant_id)
        if workflow_id:
            query = query.filter(WorkflowEnrollment.workflow_id == workflow_id)
        if entity_id:
            query = query.filter(WorkflowEnrollment.entity_id == entity_id)
        if status:
            query = query.filter(WorkflowEnrollment.status == status)

        total = query.count()
        rows = query.order_by(WorkflowEnrollment.enrolled_at.desc()).limit(limit).offset(offset).all()
        return [enrollment_from_row(row) for row in rows], total
    finally:
        session.close()


def _transition(
    tenant_id: str, enrollment_id: str, allowed: Tuple[EnrollmentStatus, ...], apply
) -> Optional[Enrollment]:
    store = SqlCrmStore()
    enrollment = store.get_enrollment(tenant_id, enrollment_id)
    if enrollment is None:
        return None
    if enrollment.status not in allowed:
        raise WorkflowValidationError(f"Enrollment {enrollment_id} is {enrollment.status.value}")
    apply(enrollment)
    store.save_enrollment(enrollment)
    logger.info("Enrollment %s is now %s", enrollment_id, enrollment.status.value)
    return enrollment


def pause_enrollment(tenant_id: str, enrollment_id: str) -> Optional[Enrollment]:
    def apply(enrollment: Enrollment) -> None:
        enrollment.status = EnrollmentStatus.PAUSED

    return _transition(tenant_id, enrollment_id, (EnrollmentStatus.ACTIVE,), apply)


def resume_enrollment(tenant_id: str, enrollment_id: str) -> Optional[Enrollment]:
    """Back to active; a pending wait keeps its deadline."""

    def apply(enrollment: Enrollment) -> None:
        enrollment.status = EnrollmentStatus.ACTIVE
        if enrollment.next_check_at is None:
            enrollment.next_check_at = utcnow()

    return _transition(tenant_id, enrollment_id, (EnrollmentStatus.PAUSED,), apply)


def stop_enrollment(tenant_id: str, enrollment_id: str) -> Optional[Enrollment]:
    def apply(enrollment: Enrollment) -> None:
        now = utcnow()
        enrollment.status = EnrollmentStatus.STOPPED
        enrollment.outcome = "stopped_manually"
        enrollment.completed_at = now
        enrollment.last_transition_at = now
        enrollment.next_check_at = None
        enrollment.wait_expires_at = None

    return _transition(
        tenant_id, enrollment_id, (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED), apply
    )
