# tests/automation/rules/test_dispatcher.py
"""Test dispatch_event(): matching, ordering, isolation and execution logging."""
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from automation.rules.dispatcher import build_snapshot, dispatch_event, order_rules
from automation.rules.factory import create_rule
from automation.rules.models import CrmEvent, ExecutionStatus

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _rule(name, trigger_type, action_type, action_config, priority=0, minutes=0, **extra):
    payload = {
        "name": name,
        "priority": priority,
        "triggerType": trigger_type,
        "triggerConfig": extra.pop("trigger_config", {}),
        "actionType": action_type,
        "actionConfig": action_config,
        "conditions": extra.pop("conditions", None),
        "status": extra.pop("status", "active"),
    }
    return create_rule("t1", payload, created_at=T0 + timedelta(minutes=minutes), **extra)


def _tag_rule(name, tag, priority=0, minutes=0, **extra):
    return _rule(name, "email_opened", "update_field", {"updateType": "tag", "tag": tag}, priority, minutes, **extra)


def _opened(entity_id="c1"):
    return CrmEvent(type="email_opened", tenant_id="t1", entity_id=entity_id)


class TestOrderRules:
    """Test priority ordering."""

    def test_priority_then_creation(self):
        low = _tag_rule("low", "x", priority=1, minutes=0)
        high_late = _tag_rule("high-late", "x", priority=5, minutes=2)
        high_early = _tag_rule("high-early", "x", priority=5, minutes=1)
        assert [r.name for r in order_rules([low, high_late, high_early])] == ["high-early", "high-late", "low"]


class TestBuildSnapshot:
    """Test the condition snapshot."""

    def test_event_payload_available(self):
        event = CrmEvent(type="stage_changed", tenant_id="t1", entity_id="c1", payload={"to_stage": "won"})
        snapshot = build_snapshot({"id": "c1", "stage": "won"}, event)
        assert snapshot["event"] == {"type": "stage_changed", "to_stage": "won"}
        assert snapshot["stage"] == "won"

    def test_missing_entity(self):
        snapshot = build_snapshot(None, _opened())
        assert snapshot["id"] == "c1"


class TestDispatchEvent:
    """Test dispatch_event() against the in-memory store."""

    @pytest.mark.asyncio
    async def test_no_rules(self, memory_store):
        report = await dispatch_event(_opened(), memory_store)
        assert report.candidates == 0
        assert report.executions == []
        assert memory_store.executions == []

    @pytest.mark.asyncio
    async def test_executions_follow_priority_order(self, memory_store):
        memory_store.add_entity("t1", "c1")
        memory_store.add_rule(_tag_rule("a", "a", priority=1, minutes=0))
        memory_store.add_rule(_tag_rule("c", "c", priority=5, minutes=2))
        memory_store.add_rule(_tag_rule("b", "b", priority=5, minutes=1))

        report = await dispatch_event(_opened(), memory_store)

        assert report.matched == 3
        assert [e.rule_name for e in report.executions] == ["b", "c", "a"]
        assert [e.sequence for e in memory_store.executions] == [0, 1, 2]
        assert [e.rule_name for e in memory_store.executions] == ["b", "c", "a"]
        # Entity-mutating actions apply in the same order.
        assert memory_store.entities[("t1", "c1")]["tags"] == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_concurrent_actions_logged_in_priority_order(self, memory_store):
        """A slow high-priority action finishing last still takes the first sequence."""
        memory_store.add_entity("t1", "c1")
        memory_store.add_rule(_rule("slow", "email_opened", "create_task", {"title": "slow"}, priority=9))
        memory_store.add_rule(_rule("fast", "email_opened", "create_task", {"title": "fast"}, priority=1))
        create_task = memory_store.create_task

        def delayed_create_task(tenant_id, entity_id, task):
            if task["title"] == "slow":
                time.sleep(0.2)
            return create_task(tenant_id, entity_id, task)

        with patch.object(memory_store, "create_task", side_effect=delayed_create_task):
            report = await dispatch_event(_opened(), memory_store)

        assert [t["title"] for t in memory_store.tasks] == ["fast", "slow"]
        assert [e.rule_name for e in report.executions] == ["slow", "fast"]
        assert [(e.sequence, e.rule_name) for e in memory_store.executions] == [(0, "slow"), (1, "fast")]
        assert all(e.status == ExecutionStatus.SUCCESS for e in memory_store.executions)

    @pytest.mark.asyncio
    async def test_non_matching_and_paused_rules_are_ignored(self, memory_store):
        memory_store.add_entity("t1", "c1")
        memory_store.add_rule(_rule("reply", "email_replied", "update_field", {"updateType": "tag", "tag": "r"}))
        memory_store.add_rule(_tag_rule("paused", "p", status="paused"))

        report = await dispatch_event(_opened(), memory_store)

        assert report.candidates == 1
        assert report.matched == 0
        assert memory_store.executions == []

    @pytest.mark.asyncio
    async def test_conditions_not_met_is_skipped(self, memory_store):
        memory_store.add_entity("t1", "c1", score=10)
        conditions = {"logic": "AND", "rules": [{"field": "score", "operator": "greater_than", "value": 70}]}
        memory_store.add_rule(_tag_rule("hot", "hot", conditions=conditions))

        report = await dispatch_event(_opened(), memory_store)

        assert report.count(ExecutionStatus.SKIPPED) == 1
        execution = memory_store.executions[0]
        assert execution.status == ExecutionStatus.SKIPPED
        assert execution.detail == {"reason": "conditions_not_met"}
        assert memory_store.entities[("t1", "c1")]["tags"] == []

    @pytest.mark.asyncio
    async def test_skipped_not_persisted_when_disabled(self, memory_store):
        memory_store.add_entity("t1", "c1", score=10)
        conditions = {"logic": "AND", "rules": [{"field": "score", "operator": "greater_than", "value": 70}]}
        memory_store.add_rule(_tag_rule("hot", "hot", conditions=conditions))

        with patch("automation.rules.dispatcher.PERSIST_SKIPPED_EXECUTIONS", False):
            report = await dispatch_event(_opened(), memory_store)

        assert report.count(ExecutionStatus.SKIPPED) == 1
        assert memory_store.executions == []

    @pytest.mark.asyncio
    async def test_one_failing_action_does_not_abort_others(self, memory_store):
        memory_store.add_entity("t1", "c1")
        memory_store.add_rule(_rule("enroll", "email_opened", "enroll_sequence", {"workflowId": "missing"}, priority=9))
        memory_store.add_rule(_tag_rule("tag", "ok", priority=1))

        report = await dispatch_event(_opened(), memory_store)

        statuses = [e.status for e in report.executions]
        assert statuses == [ExecutionStatus.FAILED, ExecutionStatus.SUCCESS]
        assert "missing" in report.executions[0].error
        assert memory_store.entities[("t1", "c1")]["tags"] == ["ok"]

    @pytest.mark.asyncio
    async def test_move_stage_emits_stage_changed(self, memory_store):
        memory_store.add_entity("t1", "c1", stage="meeting")
        memory_store.add_rule(_rule("advance", "email_opened", "move_stage", {"toStage": "proposal"}))

        report = await dispatch_event(_opened(), memory_store)

        assert memory_store.entities[("t1", "c1")]["stage"] == "proposal"
        assert len(report.emitted_events) == 1
        emitted = report.emitted_events[0]
        assert emitted.type == "stage_changed"
        assert emitted.to_stage == "proposal"
        assert emitted.from_stage == "meeting"

    @pytest.mark.asyncio
    async def test_persist_failure_is_reported(self, memory_store):
        memory_store.add_entity("t1", "c1")
        memory_store.add_rule(_tag_rule("tag", "x"))
        memory_store.fail_record_executions = True

        report = await dispatch_event(_opened(), memory_store)

        assert report.persisted is False
        assert "unavailable" in report.persist_error
        # The side effect already happened.
        assert report.count(ExecutionStatus.SUCCESS) == 1
        assert memory_store.entities[("t1", "c1")]["tags"] == ["x"]

    @pytest.mark.asyncio
    async def test_rules_are_tenant_scoped(self, memory_store):
        memory_store.add_entity("t1", "c1")
        other = _tag_rule("other", "leak").model_copy(update={"tenant_id": "t2"})
        memory_store.add_rule(other)

        report = await dispatch_event(_opened(), memory_store)

        assert report.candidates == 0
        assert memory_store.entities[("t1", "c1")]["tags"] == []


class TestScheduledDispatch:
    """Test cron rules through the dispatcher."""

    def _tick(self, at):
        return CrmEvent(type="schedule_tick", tenant_id="t1", entity_id="t1", entity_type="tenant", occurred_at=at)

    @pytest.mark.asyncio
    async def test_fires_once_per_occurrence(self, memory_store):
        rule = _rule(
            "daily",
            "scheduled",
            "send_notification",
            {"message": "Daily review"},
            trigger_config={"cron": "0 9 * * *"},
        )
        memory_store.add_rule(rule)
        first = datetime(2024, 1, 2, 9, 5, tzinfo=timezone.utc)

        report = await dispatch_event(self._tick(first), memory_store)
        assert report.count(ExecutionStatus.SUCCESS) == 1
        assert memory_store.executions[0].occurrence_at == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)

        again = await dispatch_event(self._tick(first + timedelta(minutes=5)), memory_store)
        assert again.matched == 0

        next_day = await dispatch_event(self._tick(first + timedelta(days=1)), memory_store)
        assert next_day.count(ExecutionStatus.SUCCESS) == 1
        assert len(memory_store.notifications) == 2

    @pytest.mark.asyncio
    async def test_skipped_occurrence_is_recorded(self, memory_store):
        """A skipped cron occurrence is still consumed, so it is not retried on the next tick."""
        conditions = {"logic": "AND", "rules": [{"field": "stage", "operator": "equals", "value": "won"}]}
        memory_store.add_rule(
            _rule(
                "daily",
                "scheduled",
                "send_notification",
                {"message": "x"},
                trigger_config={"cron": "0 9 * * *"},
                conditions=conditions,
            )
        )
        at = datetime(2024, 1, 2, 9, 5, tzinfo=timezone.utc)

        await dispatch_event(self._tick(at), memory_store)
        assert [e.status for e in memory_store.executions] == [ExecutionStatus.SKIPPED]

        again = await dispatch_event(self._tick(at + timedelta(minutes=5)), memory_store)
        assert again.matched == 0

    @pytest.mark.asyncio
    async def test_no_reply_skip_on_tick_is_not_recorded(self, memory_store):
        """Per-entity ticks that fail conditions would flood the log; they are not persisted."""
        now = datetime(2024, 1, 10, tzinfo=timezone.utc)
        memory_store.add_entity("t1", "c1", last_outbound_at=now - timedelta(days=5), score=0)
        conditions = {"logic": "AND", "rules": [{"field": "score", "operator": "greater_than", "value": 50}]}
        memory_store.add_rule(
            _rule(
                "nudge",
                "no_reply_after_days",
                "create_task",
                {"title": "Follow up"},
                trigger_config={"days": 3},
                conditions=conditions,
            )
        )
        tick = CrmEvent(type="schedule_tick", tenant_id="t1", entity_id="c1", occurred_at=now)

        report = await dispatch_event(tick, memory_store)

        assert report.count(ExecutionStatus.SKIPPED) == 1
        assert memory_store.executions == []
