# tests/crm_api/services/test_sweeper.py
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from automation.clock import utcnow
from automation.workflows.models import EnrollmentStatus
from crm_api.db.engine import get_session
from crm_api.db.models import Execution, Notification, Task
from crm_api.services.rules import create_rule_record
from crm_api.services.sweeper import SWEEP_JOB_ID, run_sweep, start_sweeper, stop_sweeper
from crm_api.services.workflows import create_workflow, enroll_entity


def _count(model):
    session = get_session()
    try:
        return session.query(model).count()
    finally:
        session.close()


@pytest.fixture
def stop_event():
    return threading.Event()


class TestRunSweep:
    """Test run_sweep() function."""

    def test_nothing_to_do(self, sql_engine, stop_event):
        assert run_sweep(stop_event=stop_event) == {"processed": 0, "errors": 0, "ticks": 0}

    def test_tenant_schedule_fires_once_per_occurrence(self, sql_engine, stop_event):
        create_rule_record(
            "t1",
            {"name": "Daily digest", "triggerType": "scheduled", "triggerConfig": {"cron": "0 9 * * *"},
             "actionType": "send_notification", "actionConfig": {"message": "Pipeline digest"}},
        )
        # Noon, so the follow-up sweep stays within the same 09:00 occurrence.
        now = (utcnow() + timedelta(days=2)).replace(hour=12, minute=0, second=0, microsecond=0)

        stats = run_sweep(now=now, stop_event=stop_event)
        assert stats["ticks"] == 1
        assert _count(Notification) == 1

        run_sweep(now=now + timedelta(minutes=5), stop_event=stop_event)
        assert _count(Notification) == 1

        session = get_session()
        try:
            execution = session.query(Execution).one()
            assert execution.entity_type == "tenant"
            assert execution.entity_id == "t1"
            assert execution.occurrence_at is not None
        finally:
            session.close()

    def test_no_reply_ticks_every_entity(self, sql_store, stop_event):
        now = utcnow()
        sql_store.upsert_entity("t1", "quiet", name="Quiet", last_outbound_at=now - timedelta(days=4))
        sql_store.upsert_entity("t1", "recent", name="Recent", last_outbound_at=now - timedelta(hours=2))
        create_rule_record(
            "t1",
            {"name": "Nudge", "triggerType": "no_reply_after_days", "triggerConfig": {"days": 3},
             "actionType": "create_task", "actionConfig": {"title": "Follow up with {{name}}"}},
        )

        stats = run_sweep(now=now, stop_event=stop_event)

        # One tenant tick plus one per entity.
        assert stats["ticks"] == 3
        session = get_session()
        try:
            tasks = session.query(Task).all()
            assert [(t.entity_id, t.title) for t in tasks] == [("quiet", "Follow up with Quiet")]
        finally:
            session.close()

        run_sweep(now=now + timedelta(hours=1), stop_event=stop_event)
        assert _count(Task) == 1

    def test_due_enrollments_advance(self, sql_store, stop_event):
        sql_store.upsert_entity("t1", "c1", email="ada@example.com")
        workflow, _ = create_workflow(
            "t1",
            {
                "name": "Nudge later",
                "status": "active",
                "entry_node_id": "wait",
                "nodes": [
                    {"node_id": "wait", "type": "wait", "config": {"duration": 1}, "edges": {"default": "done"}},
                    {"node_id": "done", "type": "stop", "config": {"outcome": "waited"}},
                ],
            },
        )
        enrollment, _ = enroll_entity("t1", workflow.workflow_id, "c1")

        stats = run_sweep(now=utcnow() + timedelta(days=2), stop_event=stop_event)

        assert stats["processed"] == 1
        saved = sql_store.get_enrollment("t1", enrollment.enrollment_id)
        assert saved.status == EnrollmentStatus.COMPLETED
        assert saved.outcome == "waited"

    def test_stop_request_skips_ticks(self, sql_engine):
        create_rule_record(
            "t1",
            {"name": "Digest", "triggerType": "scheduled", "triggerConfig": {"cron": "0 9 * * *"},
             "actionType": "send_notification", "actionConfig": {"message": "Digest"}},
        )
        stopped = threading.Event()
        stopped.set()
        stats = run_sweep(now=utcnow() + timedelta(days=2), stop_event=stopped)
        assert stats["ticks"] == 0

    @patch("crm_api.services.sweeper.process_due_enrollments", side_effect=RuntimeError("db down"))
    def test_failure_is_contained(self, mock_process, sql_engine, stop_event):
        assert run_sweep(stop_event=stop_event) == {"processed": 0, "errors": 1, "ticks": 0}


class TestSweeperLifecycle:
    """Test start_sweeper() / stop_sweeper()."""

    @patch("crm_api.services.sweeper.get_scheduler")
    def test_start_registers_job(self, mock_get_scheduler):
        scheduler = MagicMock()
        scheduler.running = False
        mock_get_scheduler.return_value = scheduler

        start_sweeper(interval_seconds=60)

        scheduler.add_job.assert_called_once()
        assert scheduler.add_job.call_args.kwargs["id"] == SWEEP_JOB_ID
        assert scheduler.add_job.call_args.kwargs["max_instances"] == 1
        scheduler.start.assert_called_once()

    @patch("crm_api.services.sweeper.get_scheduler")
    def test_start_twice_is_noop(self, mock_get_scheduler):
        scheduler = MagicMock()
        scheduler.running = True
        mock_get_scheduler.return_value = scheduler

        start_sweeper()

        scheduler.add_job.assert_not_called()

    def test_stop_without_scheduler(self):
        with patch("crm_api.services.sweeper._scheduler", None), patch(
            "crm_api.services.sweeper._stop_event", threading.Event()
        ) as stop_flag:
            stop_sweeper()
            assert stop_flag.is_set()
