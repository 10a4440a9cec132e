# tests/crm_api/test_sql_store.py
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from automation.clock import utcnow
from automation.exceptions import ActionFailure
from automation.rules.factory import create_rule
from automation.rules.models import CrmEvent, ExecutionStatus, RuleExecution
from automation.workflows.models import Enrollment, EnrollmentStatus
from crm_api.db.engine import get_session
from crm_api.db.models import Execution, Suppression
from crm_api.services.scores import adjust_lead_score

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _execution(sequence, status=ExecutionStatus.SUCCESS, **overrides):
    values = dict(
        tenant_id="t1",
        rule_id="r1",
        rule_name="Rule one",
        event_id="e1",
        event_type="email_opened",
        entity_type="contact",
        entity_id="c1",
        status=status,
        sequence=sequence,
    )
    values.update(overrides)
    return RuleExecution(**values)


class TestEntities:
    """Test entity snapshots and writes."""

    def test_snapshot_merges_custom_fields(self, sql_store):
        sql_store.upsert_entity(
            "t1", "c1", name="Ada", email="ada@example.com", stage="new", fields={"industry": "saas"}
        )
        entity = sql_store.get_entity("t1", "c1")
        assert entity["industry"] == "saas"
        assert entity["fields"] == {"industry": "saas"}
        assert entity["stage"] == "new"
        assert entity["days_in_stage"] == 0
        assert entity["stage_entered_at"].tzinfo is not None
        assert entity["score"] == 0
        assert entity["tags"] == []

    def test_entities_are_tenant_scoped(self, sql_store):
        sql_store.upsert_entity("t1", "c1", name="Ada")
        assert sql_store.get_entity("t2", "c1") is None
        assert sql_store.list_entities("t2") == []

    def test_list_entities_filters_type(self, sql_store):
        sql_store.upsert_entity("t1", "c1", entity_type="contact")
        sql_store.upsert_entity("t1", "d1", entity_type="deal", value=5000)
        deals = sql_store.list_entities("t1", entity_type="deal")
        assert [e["id"] for e in deals] == ["d1"]

    def test_set_field(self, sql_store):
        sql_store.upsert_entity("t1", "c1")
        sql_store.set_field("t1", "c1", "industry", "fintech")
        sql_store.set_field("t1", "c1", "name", "Grace")
        entity = sql_store.get_entity("t1", "c1")
        assert entity["fields"] == {"industry": "fintech"}
        assert entity["name"] == "Grace"

    def test_add_tag_once(self, sql_store):
        sql_store.upsert_entity("t1", "c1")
        assert sql_store.add_tag("t1", "c1", "vip") is True
        assert sql_store.add_tag("t1", "c1", "vip") is False
        assert sql_store.get_entity("t1", "c1")["tags"] == ["vip"]

    def test_score(self, sql_store):
        sql_store.upsert_entity("t1", "c1", score=40)
        sql_store.set_score("t1", "c1", 55)
        assert sql_store.get_score("t1", "c1") == 55

    def test_missing_entity_write_fails(self, sql_store):
        with pytest.raises(ActionFailure):
            sql_store.set_stage("t1", "ghost", "won")

    def test_entity_id_pages(self, sql_store):
        for entity_id in ("a", "b", "c"):
            sql_store.upsert_entity("t1", entity_id)
        first = sql_store.list_entity_ids("t1", 0, 2)
        assert [row[1] for row in first] == ["a", "b"]
        rest = sql_store.list_entity_ids("t1", first[-1][0], 2)
        assert [row[1] for row in rest] == ["c"]


class TestEngagement:
    """Test apply_engagement() timestamps, stage and deal value."""

    def test_reply_and_outbound(self, sql_store):
        sql_store.upsert_entity("t1", "c1")
        sql_store.apply_engagement(CrmEvent(type="email_sent", tenant_id="t1", entity_id="c1", occurred_at=NOW))
        sql_store.apply_engagement(
            CrmEvent(type="email_replied", tenant_id="t1", entity_id="c1", occurred_at=NOW + timedelta(hours=1))
        )
        entity = sql_store.get_entity("t1", "c1")
        assert entity["last_outbound_at"] == NOW
        assert entity["last_reply_at"] == NOW + timedelta(hours=1)

    def test_older_event_does_not_rewind(self, sql_store):
        sql_store.upsert_entity("t1", "c1")
        sql_store.apply_engagement(CrmEvent(type="email_replied", tenant_id="t1", entity_id="c1", occurred_at=NOW))
        sql_store.apply_engagement(
            CrmEvent(type="email_replied", tenant_id="t1", entity_id="c1", occurred_at=NOW - timedelta(days=2))
        )
        assert sql_store.get_entity("t1", "c1")["last_reply_at"] == NOW

    def test_stage_changed(self, sql_store):
        sql_store.upsert_entity("t1", "d1", stage="new")
        sql_store.apply_engagement(
            CrmEvent(
                type="stage_changed",
                tenant_id="t1",
                entity_id="d1",
                payload={"from_stage": "new", "to_stage": "proposal"},
                occurred_at=NOW,
            )
        )
        entity = sql_store.get_entity("t1", "d1")
        assert entity["stage"] == "proposal"
        assert entity["stage_entered_at"] == NOW

    def test_unknown_entity_is_ignored(self, sql_store):
        sql_store.apply_engagement(CrmEvent(type="email_replied", tenant_id="t1", entity_id="ghost"))
        assert sql_store.get_entity("t1", "ghost") is None

    def test_deal_value_changed_updates_value(self, sql_store):
        sql_store.upsert_entity("t1", "d1", entity_type="deal", value=40000)
        sql_store.apply_engagement(
            CrmEvent(type="deal_value_changed", tenant_id="t1", entity_id="d1", payload={"dealValue": "60000"})
        )
        assert sql_store.get_entity("t1", "d1")["value"] == 60000

    def test_non_numeric_value_is_ignored(self, sql_store):
        sql_store.upsert_entity("t1", "d1", entity_type="deal", value=40000)
        sql_store.apply_engagement(
            CrmEvent(type="deal_value_changed", tenant_id="t1", entity_id="d1", payload={"deal_value": "lots"})
        )
        assert sql_store.get_entity("t1", "d1")["value"] == 40000

class TestEvents:
    """Test the event log."""

    def test_dedupe_per_tenant(self, sql_store):
        assert sql_store.record_event(CrmEvent(type="email_opened", tenant_id="t1", entity_id="c1", dedupe_key="k1"))
        assert not sql_store.record_event(
            CrmEvent(type="email_opened", tenant_id="t1", entity_id="c1", dedupe_key="k1")
        )
        assert sql_store.record_event(CrmEvent(type="email_opened", tenant_id="t2", entity_id="c1", dedupe_key="k1"))

    def test_count_events(self, sql_store):
        for hours in (1, 2, 50):
            sql_store.record_event(
                CrmEvent(
                    type="email_opened",
                    tenant_id="t1",
                    entity_id="c1",
                    occurred_at=NOW - timedelta(hours=hours),
                )
            )
        assert sql_store.count_events("t1", "c1", "email_opened", NOW - timedelta(days=1)) == 2
        assert sql_store.count_events("t1", "c1", "email_replied", NOW - timedelta(days=1)) == 0


def _sent(to, occurred_at, entity_id="c1"):
    return CrmEvent(
        type="email_sent",
        tenant_id="t1",
        entity_id=entity_id,
        payload={"to": to},
        occurred_at=occurred_at,
        dedupe_key=f"sent-{to}-{occurred_at.isoformat()}",
    )


class TestSuppression:
    """Test the suppression list and send caps."""

    def test_addresses_are_normalised(self, sql_store):
        sql_store.suppress("t1", " Ada@Example.com ", "hard_bounce")
        sql_store.suppress("t1", "ada@example.com", "unsubscribed")
        assert sql_store.is_suppressed("t1", "ADA@example.com")
        assert not sql_store.is_suppressed("t2", "ada@example.com")

    def test_suppress_updates_existing_entry(self, sql_store):
        assert sql_store.suppress("t1", "ada@example.com", "manual", expires_at=NOW + timedelta(days=1)) is True
        assert sql_store.suppress("t1", "ada@example.com", "unsubscribed") is False
        assert sql_store.check_suppression("t1", "ada@example.com", now=NOW + timedelta(days=30)) == "unsubscribed"

    def test_expired_entry_is_removed(self, sql_store):
        sql_store.suppress("t1", "ada@example.com", "manual", expires_at=NOW + timedelta(days=180))
        assert sql_store.check_suppression("t1", "ada@example.com", now=NOW) == "manual"
        assert sql_store.check_suppression("t1", "ada@example.com", now=NOW + timedelta(days=181)) is None

        session = get_session()
        try:
            assert session.query(Suppression).count() == 0
        finally:
            session.close()

    def test_frequency_cap(self, sql_store):
        for days in range(4):
            sql_store.record_event(_sent("ada@example.com", NOW - timedelta(days=days, hours=2)))
        assert sql_store.check_suppression("t1", "ada@example.com", now=NOW) is None

        sql_store.record_event(_sent("Ada@Example.com", NOW - timedelta(hours=3)))
        assert sql_store.check_suppression("t1", "ada@example.com", now=NOW) == "frequency_cap"
        # The oldest sends fall out of the rolling window
        assert sql_store.check_suppression("t1", "ada@example.com", now=NOW + timedelta(days=6)) is None

    def test_domain_throttle(self, sql_store):
        with patch("crm_api.db.store.DOMAIN_THROTTLE_MAX", 3):
            for i in range(3):
                sql_store.record_event(_sent(f"user{i}@acme.com", NOW - timedelta(minutes=10 + i)))
            sql_store.record_event(_sent("ada@other.com", NOW - timedelta(minutes=5)))

            assert sql_store.check_suppression("t1", "new@acme.com", now=NOW) == "domain_throttle"
            assert sql_store.check_suppression("t1", "new@other.com", now=NOW) is None
            assert sql_store.check_suppression("t1", "new@acme.com", now=NOW + timedelta(hours=1)) is None

    def test_caps_are_tenant_scoped(self, sql_store):
        for hours in range(5):
            sql_store.record_event(_sent("ada@example.com", NOW - timedelta(hours=hours + 1)))
        assert sql_store.check_suppression("t2", "ada@example.com", now=NOW) is None


class TestLeadScoreSnapshot:
    """Test the decayed lead score exposed on entity snapshots."""

    def test_unscored_entity(self, sql_store):
        sql_store.upsert_entity("t1", "c1")
        entity = sql_store.get_entity("t1", "c1")
        assert entity["lead_score"] == 0
        assert entity["lead_tier"] == "cold"

    def test_scored_entity(self, sql_store):
        sql_store.upsert_entity("t1", "c1")
        sql_store.upsert_entity("t1", "c2")
        adjust_lead_score("t1", "c1", 75, now=utcnow())
        assert sql_store.get_entity("t1", "c1")["lead_tier"] == "hot"
        listed = {e["id"]: e["lead_score"] for e in sql_store.list_entities("t1")}
        assert listed == {"c1": 75, "c2": 0}


class TestExecutions:
    """Test execution log writes and trigger history."""

    def test_recorded_in_sequence_order(self, sql_store):
        sql_store.record_executions([_execution(1), _execution(0, ExecutionStatus.SKIPPED)])
        session = get_session()
        try:
            rows = session.query(Execution).order_by(Execution.log_id).all()
            assert [row.sequence for row in rows] == [0, 1]
            assert rows[0].status == "skipped"
        finally:
            session.close()

    def test_trigger_history(self, sql_store):
        rule = create_rule(
            "t1",
            {"name": "x", "triggerType": "email_opened", "actionType": "create_task", "actionConfig": {"title": "t"}},
            id="r1",
        )
        occurrence = NOW - timedelta(hours=3)
        sql_store.record_executions(
            [
                _execution(0, executed_at=NOW - timedelta(days=1)),
                _execution(0, ExecutionStatus.FAILED, executed_at=NOW, occurrence_at=occurrence),
            ]
        )
        history = sql_store.get_trigger_history("t1", rule, "c1")
        assert history.last_executed_at == NOW - timedelta(days=1)
        assert history.last_occurrence_at == occurrence
        assert history.not_before == rule.created_at

        other = sql_store.get_trigger_history("t1", rule, "c2")
        assert other.last_executed_at is None


class TestEnrollments:
    """Test enrollment persistence."""

    def test_save_and_reload(self, sql_store):
        enrollment = Enrollment(
            tenant_id="t1",
            workflow_id="wf-1",
            entity_id="c1",
            current_node_id="wait",
            next_check_at=NOW,
            state={"score": 10},
            history=[{"node_id": "send", "at": NOW.isoformat()}],
        )
        sql_store.save_enrollment(enrollment)

        loaded = sql_store.get_enrollment("t1", enrollment.enrollment_id)
        assert loaded.current_node_id == "wait"
        assert loaded.next_check_at == NOW
        assert loaded.state == {"score": 10}
        assert loaded.history[0]["node_id"] == "send"
        assert sql_store.get_enrollment("t2", enrollment.enrollment_id) is None

    def test_due_enrollments(self, sql_store):
        due = Enrollment(tenant_id="t1", workflow_id="wf-1", entity_id="c1", next_check_at=NOW - timedelta(minutes=1))
        later = Enrollment(tenant_id="t1", workflow_id="wf-1", entity_id="c2", next_check_at=NOW + timedelta(days=1))
        paused = Enrollment(
            tenant_id="t1",
            workflow_id="wf-1",
            entity_id="c3",
            status=EnrollmentStatus.PAUSED,
            next_check_at=NOW - timedelta(days=1),
        )
        for enrollment in (due, later, paused):
            sql_store.save_enrollment(enrollment)

        found = sql_store.list_due_enrollments(NOW, 10)
        assert [e.enrollment_id for e in found] == [due.enrollment_id]

    def test_active_enrollment_lookup(self, sql_store):
        enrollment = Enrollment(tenant_id="t1", workflow_id="wf-1", entity_id="c1", status=EnrollmentStatus.PAUSED)
        sql_store.save_enrollment(enrollment)
        assert sql_store.get_active_enrollment("t1", "wf-1", "c1").enrollment_id == enrollment.enrollment_id
        assert sql_store.list_active_enrollments("t1", "c1") == []

        enrollment.status = EnrollmentStatus.COMPLETED
        enrollment.completed_at = utcnow()
        sql_store.save_enrollment(enrollment)
        assert sql_store.get_active_enrollment("t1", "wf-1", "c1") is None
