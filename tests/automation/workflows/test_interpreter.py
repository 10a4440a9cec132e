# tests/automation/workflows/test_interpreter.py
"""Test the workflow interpreter: enrollment, cascades, waits, branches and guards."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from automation.exceptions import WorkflowNotFoundError, WorkflowValidationError
from automation.rules.models import CrmEvent
from automation.workflows.interpreter import (
    advance_enrollment,
    process_due_enrollments,
    resume_enrollments_for_event,
    start_enrollment,
)
from automation.workflows.models import Enrollment, EnrollmentStatus, WorkflowDefinition

NOW = datetime(2024, 6, 3, 10, 0, tzinfo=timezone.utc)


def _workflow(nodes, entry="n1", workflow_id="wf-1", status="active"):
    return WorkflowDefinition(
        workflow_id=workflow_id,
        tenant_id="t1",
        name="Sequence",
        status=status,
        entry_node_id=entry,
        nodes=nodes,
    )


def _send(node_id, next_id, subject="Hello {{name}}", **edges):
    return {
        "node_id": node_id,
        "type": "send",
        "config": {"subject": subject, "body": "Body for {{name}}"},
        "edges": {"default": next_id, **edges},
    }


def _stop(node_id, outcome="completed"):
    return {"node_id": node_id, "type": "stop", "config": {"outcome": outcome}}


def _tag(node_id, tag, next_id):
    config = {"updateType": "tag", "tag": tag}
    return {"node_id": node_id, "type": "update", "config": config, "edges": {"default": next_id}}


def _wait(node_id, next_id, **config):
    return {"node_id": node_id, "type": "wait", "config": config, "edges": {"default": next_id}}


@pytest.fixture
def contact(memory_store):
    return memory_store.add_entity("t1", "c1", name="Ada", email="ada@example.com", score=80)


class TestStartEnrollment:
    """Test start_enrollment()."""

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, memory_store, contact):
        with pytest.raises(WorkflowNotFoundError):
            await start_enrollment(memory_store, "t1", "nope", "c1", now=NOW)

    @pytest.mark.asyncio
    async def test_draft_workflow_rejected(self, memory_store, contact):
        memory_store.add_workflow(_workflow([_stop("n1")], status="draft"))
        with pytest.raises(WorkflowValidationError):
            await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

    @pytest.mark.asyncio
    async def test_idempotent_while_active(self, memory_store, contact):
        memory_store.add_workflow(
            _workflow([_send("n1", "n2"), _wait("n2", "n3", duration=1), _stop("n3")])
        )
        first, created = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        again, created_again = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        assert created is True
        assert created_again is False
        assert again.enrollment_id == first.enrollment_id
        assert len(memory_store.emails) == 1

    @pytest.mark.asyncio
    async def test_initial_state_and_email(self, memory_store, contact):
        memory_store.add_workflow(_workflow([_stop("n1")]))
        enrollment, _ = await start_enrollment(
            memory_store, "t1", "wf-1", "c1", initial_state={"campaign": "spring"}, now=NOW
        )
        assert enrollment.state == {"email": "ada@example.com", "campaign": "spring"}
        assert enrollment.status == EnrollmentStatus.COMPLETED


class TestSendAndWait:
    """Test send nodes and duration waits."""

    @pytest.mark.asyncio
    async def test_send_wait_send_stop(self, memory_store, contact):
        memory_store.add_workflow(
            _workflow(
                [
                    _send("n1", "n2", subject="Hi {{name}}"),
                    _wait("n2", "n3", duration=2, unit="days"),
                    _send("n3", "n4", subject="Following up"),
                    _stop("n4", "sequence_done"),
                ]
            )
        )

        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_node_id == "n2"
        assert enrollment.next_check_at == NOW + timedelta(days=2)
        assert [e["subject"] for e in memory_store.emails] == ["Hi Ada"]
        assert memory_store.emails[0]["to"] == "ada@example.com"
        assert any(e.type == "email_sent" for e in memory_store.events.values())

        early = await process_due_enrollments(memory_store, now=NOW + timedelta(days=1))
        assert early == {"processed": 0, "errors": 0}

        done = await process_due_enrollments(memory_store, now=NOW + timedelta(days=2))
        assert done == {"processed": 1, "errors": 0}

        saved = memory_store.enrollments[enrollment.enrollment_id]
        assert saved.status == EnrollmentStatus.COMPLETED
        assert saved.outcome == "sequence_done"
        assert saved.next_check_at is None
        assert [e["subject"] for e in memory_store.emails] == ["Hi Ada", "Following up"]
        assert [h["node_id"] for h in saved.history] == ["n1", "n2", "n2", "n3", "n4"]

    @pytest.mark.asyncio
    async def test_suppressed_address_takes_suppressed_edge(self, memory_store, contact):
        memory_store.suppress("t1", "ADA@example.com", "unsubscribed")
        memory_store.add_workflow(
            _workflow([_send("n1", "n2", suppressed="n3"), _stop("n2"), _stop("n3", "suppressed")])
        )

        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        assert memory_store.emails == []
        assert enrollment.outcome == "suppressed"
        assert enrollment.history[0]["skipped"] == "suppressed"

    @pytest.mark.asyncio
    async def test_suppressed_without_edge_continues(self, memory_store, contact):
        memory_store.suppress("t1", "ada@example.com", "hard_bounce")
        memory_store.add_workflow(_workflow([_send("n1", "n2"), _stop("n2", "done")]))

        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        assert memory_store.emails == []
        assert enrollment.outcome == "done"

    @pytest.mark.asyncio
    async def test_no_email_skips_send(self, memory_store):
        memory_store.add_entity("t1", "c2", name="No Mail")
        memory_store.add_workflow(_workflow([_send("n1", "n2"), _stop("n2")]))

        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c2", now=NOW)

        assert enrollment.history[0]["skipped"] == "no_email"
        assert enrollment.status == EnrollmentStatus.COMPLETED


class TestEventWait:
    """Test event-mode waits and timeouts."""

    def _nodes(self, with_timeout_edge):
        wait = {
            "node_id": "n1",
            "type": "wait",
            "config": {"waitType": "event", "eventType": "email_replied", "timeoutDays": 5},
            "edges": {"default": "n2"},
        }
        if with_timeout_edge:
            wait["edges"]["timeout"] = "n4"
        return [wait, _tag("n2", "replied", "n3"), _stop("n3", "replied"), _stop("n4", "no_reply")]

    @pytest.mark.asyncio
    async def test_parks_until_expiry(self, memory_store, contact):
        memory_store.add_workflow(_workflow(self._nodes(False)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        assert enrollment.wait_expires_at == NOW + timedelta(days=5)
        assert enrollment.next_check_at == NOW + timedelta(days=5)

    @pytest.mark.asyncio
    async def test_matching_event_resumes(self, memory_store, contact):
        memory_store.add_workflow(_workflow(self._nodes(True)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        other = CrmEvent(type="email_opened", tenant_id="t1", entity_id="c1")
        assert await resume_enrollments_for_event(memory_store, other) == []

        reply = CrmEvent(type="email_replied", tenant_id="t1", entity_id="c1")
        released = await resume_enrollments_for_event(memory_store, reply)

        assert [e.enrollment_id for e in released] == [enrollment.enrollment_id]
        assert released[0].outcome == "replied"
        assert memory_store.entities[("t1", "c1")]["tags"] == ["replied"]

    @pytest.mark.asyncio
    async def test_event_seen_by_sweep(self, memory_store, contact):
        """A reply recorded while parked is picked up by the next due check."""
        memory_store.add_workflow(_workflow(self._nodes(True)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        memory_store.record_event(
            CrmEvent(type="email_replied", tenant_id="t1", entity_id="c1", occurred_at=NOW + timedelta(days=1))
        )

        await process_due_enrollments(memory_store, now=NOW + timedelta(days=5))

        assert memory_store.enrollments[enrollment.enrollment_id].outcome == "replied"

    @pytest.mark.asyncio
    async def test_timeout_edge(self, memory_store, contact):
        memory_store.add_workflow(_workflow(self._nodes(True)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        await process_due_enrollments(memory_store, now=NOW + timedelta(days=5))

        saved = memory_store.enrollments[enrollment.enrollment_id]
        assert saved.status == EnrollmentStatus.COMPLETED
        assert saved.outcome == "no_reply"

    @pytest.mark.asyncio
    async def test_timeout_without_edge_stops(self, memory_store, contact):
        memory_store.add_workflow(_workflow(self._nodes(False)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        await process_due_enrollments(memory_store, now=NOW + timedelta(days=6))

        saved = memory_store.enrollments[enrollment.enrollment_id]
        assert saved.status == EnrollmentStatus.STOPPED
        assert saved.outcome == "timed_out"


class TestBranch:
    """Test branch nodes."""

    def _nodes(self, config):
        return [
            {"node_id": "n1", "type": "branch", "config": config, "edges": {"yes": "n2", "no": "n3"}},
            _stop("n2", "yes"),
            _stop("n3", "no"),
        ]

    @pytest.mark.asyncio
    async def test_score_threshold(self, memory_store, contact):
        config = {"conditionType": "score_threshold", "operator": "gte", "score": 80}
        memory_store.add_workflow(_workflow(self._nodes(config)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        assert enrollment.outcome == "yes"

    @pytest.mark.asyncio
    async def test_field_compare(self, memory_store, contact):
        config = {"conditionType": "field_compare", "field": "name", "operator": "contains", "value": "zed"}
        memory_store.add_workflow(_workflow(self._nodes(config)))
        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        assert enrollment.outcome == "no"

    @pytest.mark.asyncio
    async def test_event_window(self, memory_store, contact):
        memory_store.record_event(
            CrmEvent(type="email_opened", tenant_id="t1", entity_id="c1", occurred_at=NOW - timedelta(days=2))
        )
        memory_store.record_event(
            CrmEvent(type="email_opened", tenant_id="t1", entity_id="c1", occurred_at=NOW - timedelta(days=20))
        )
        config = {"conditionType": "event_window", "eventType": "email_opened", "windowDays": 7, "minCount": 2}
        memory_store.add_workflow(_workflow(self._nodes(config)))

        enrollment, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)

        assert enrollment.outcome == "no"
        assert enrollment.history[0]["branch"] == "no"


class TestGuards:
    """Test runtime guards against bad graphs and faults."""

    def _enrollment(self, node_id="a"):
        return Enrollment(
            tenant_id="t1", workflow_id="wf-1", entity_id="c1", current_node_id=node_id, next_check_at=NOW
        )

    @pytest.mark.asyncio
    async def test_cycle_detected(self, memory_store, contact):
        workflow = _workflow([_tag("a", "x", "b"), _tag("b", "y", "a")], entry="a")
        enrollment = await advance_enrollment(memory_store, self._enrollment(), now=NOW, workflow=workflow)
        assert enrollment.status == EnrollmentStatus.STOPPED
        assert enrollment.outcome == "cycle_detected"

    @pytest.mark.asyncio
    async def test_step_limit(self, memory_store, contact):
        workflow = _workflow([_tag("a", "x", "b"), _tag("b", "y", "c"), _tag("c", "z", "d"), _stop("d")], entry="a")
        with patch("automation.workflows.interpreter.MAX_IMMEDIATE_STEPS", 2):
            enrollment = await advance_enrollment(memory_store, self._enrollment(), now=NOW, workflow=workflow)
        assert enrollment.outcome == "step_limit"
        assert memory_store.entities[("t1", "c1")]["tags"] == ["x", "y"]

    @pytest.mark.asyncio
    async def test_node_failure_stops(self, memory_store):
        workflow = _workflow([_tag("a", "x", "b"), _stop("b")], entry="a")
        enrollment = await advance_enrollment(memory_store, self._enrollment(), now=NOW, workflow=workflow)
        assert enrollment.status == EnrollmentStatus.STOPPED
        assert enrollment.outcome == "node_failed"
        assert "not found" in enrollment.history[-1]["error"]

    @pytest.mark.asyncio
    async def test_store_error_mid_cascade_sends_once(self, memory_store, contact):
        """A store error after a send stops the enrollment so later sweeps do not resend."""
        memory_store.add_workflow(_workflow([_send("a", "b"), _tag("b", "x", "c"), _stop("c")], entry="a"))
        memory_store.save_enrollment(self._enrollment())

        with patch.object(memory_store, "add_tag", side_effect=RuntimeError("db locked")):
            results = [await process_due_enrollments(memory_store, now=NOW + timedelta(hours=i)) for i in range(3)]

        assert len(memory_store.emails) == 1
        assert results[0] == {"processed": 1, "errors": 0}
        assert results[1:] == [{"processed": 0, "errors": 0}] * 2
        saved = next(iter(memory_store.enrollments.values()))
        assert saved.status == EnrollmentStatus.STOPPED
        assert saved.outcome == "node_failed"
        assert saved.history[-1]["node_id"] == "b"
        assert saved.history[-1]["error"] == "db locked"

    @pytest.mark.asyncio
    async def test_missing_workflow(self, memory_store, contact):
        enrollment = await advance_enrollment(memory_store, self._enrollment(), now=NOW)
        assert enrollment.outcome == "missing_workflow"
        assert memory_store.enrollments[enrollment.enrollment_id].status == EnrollmentStatus.STOPPED

    @pytest.mark.asyncio
    async def test_paused_enrollment_untouched(self, memory_store, contact):
        workflow = _workflow([_tag("a", "x", "b"), _stop("b")], entry="a")
        paused = self._enrollment().model_copy(update={"status": EnrollmentStatus.PAUSED})
        result = await advance_enrollment(memory_store, paused, now=NOW, workflow=workflow)
        assert result.status == EnrollmentStatus.PAUSED
        assert memory_store.entities[("t1", "c1")]["tags"] == []


class TestEnrolNode:
    """Test enrol nodes hand off to a child workflow."""

    @pytest.mark.asyncio
    async def test_child_enrollment_created(self, memory_store, contact):
        memory_store.add_workflow(_workflow([{"node_id": "n1", "type": "enrol", "config": {"targetWorkflowId": "wf-2"},
                                              "edges": {"default": "n2"}}, _stop("n2")]))
        memory_store.add_workflow(_workflow([_stop("c1", "child_done")], entry="c1", workflow_id="wf-2"))

        parent, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", initial_state={"k": "v"}, now=NOW)

        children = [e for e in memory_store.enrollments.values() if e.workflow_id == "wf-2"]
        assert len(children) == 1
        child = children[0]
        assert child.parent_enrollment_id == parent.enrollment_id
        assert child.status == EnrollmentStatus.ACTIVE
        assert child.next_check_at == NOW
        assert child.state["k"] == "v"
        assert parent.status == EnrollmentStatus.COMPLETED

        # The child runs on the next due check.
        await process_due_enrollments(memory_store, now=NOW)
        assert memory_store.enrollments[child.enrollment_id].outcome == "child_done"

    @pytest.mark.asyncio
    async def test_missing_target_does_not_stop_parent(self, memory_store, contact):
        memory_store.add_workflow(_workflow([{"node_id": "n1", "type": "enrol", "config": {"targetWorkflowId": "ghost"},
                                              "edges": {"default": "n2"}}, _stop("n2", "done")]))
        parent, _ = await start_enrollment(memory_store, "t1", "wf-1", "c1", now=NOW)
        assert parent.outcome == "done"
        assert "enrol_error" in parent.history[0]
