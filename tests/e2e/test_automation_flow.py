# tests/e2e/test_automation_flow.py
"""E2E tests for rules, templates and sequences against a running server."""
import uuid

import pytest

from tests.e2e.conftest import APIClient


def _entity_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@pytest.mark.e2e
def test_service_reachable(api_client: APIClient):
    """Health answers without tenant scoping and the tenant sees its own rule list."""
    assert api_client.get("/health").json() == {"status": "ok"}

    rules = api_client.get("/api/v1/rules")
    assert rules.status_code == 200
    assert "rules" in rules.json()


@pytest.mark.e2e
def test_rule_cascade(api_client: APIClient):
    """A reply moves the deal; the stage change then creates a task."""
    entity_id = _entity_id("deal")
    api_client.put(f"/api/v1/entities/{entity_id}", json={"name": "Acme", "stage": "new"})

    mover = api_client.post(
        "/api/v1/rules",
        json={"name": "Qualify on reply", "priority": 5, "triggerType": "email_replied",
              "actionType": "move_stage", "actionConfig": {"toStage": "qualified"}},
    )
    assert mover.status_code == 201
    follow_up = api_client.post(
        "/api/v1/rules",
        json={"name": "Call after qualification", "triggerType": "stage_entered",
              "triggerConfig": {"fromStage": "new"}, "actionType": "create_task",
              "actionConfig": {"title": "Call {{name}}"}},
    )
    assert follow_up.status_code == 201

    try:
        response = api_client.post("/api/v1/events", json={"type": "email_replied", "entityId": entity_id})
        assert response.status_code == 202
        reports = response.json()["reports"]
        assert [r["event_type"] for r in reports] == ["email_replied", "stage_changed"]

        assert api_client.get(f"/api/v1/entities/{entity_id}").json()["stage"] == "qualified"
        executions = api_client.get("/api/v1/executions", params={"entity_id": entity_id}).json()
        assert executions["total"] == 2
    finally:
        api_client.delete(f"/api/v1/rules/{mover.json()['id']}")
        api_client.delete(f"/api/v1/rules/{follow_up.json()['id']}")


@pytest.mark.e2e
def test_install_builtin_template(api_client: APIClient):
    """Built-in templates are seeded at startup and installable."""
    templates = api_client.get("/api/v1/templates", params={"category": "task_automation"}).json()
    assert templates["total"] > 0

    template_id = templates["templates"][0]["id"]
    response = api_client.post(f"/api/v1/templates/{template_id}/install", json={"status": "paused"})
    assert response.status_code == 201
    rule = response.json()["rule"]
    assert rule["template_id"] == template_id
    api_client.delete(f"/api/v1/rules/{rule['id']}")


@pytest.mark.e2e
def test_sequence_released_by_reply(api_client: APIClient, poll_enrollment):
    """An event wait is released by an ingested reply."""
    entity_id = _entity_id("contact")
    api_client.put(f"/api/v1/entities/{entity_id}", json={"name": "Ada", "email": f"{entity_id}@example.com"})

    workflow = api_client.post(
        "/api/v1/workflows",
        json={
            "name": "Wait for reply",
            "status": "active",
            "entryNodeId": "wait",
            "nodes": [
                {"node_id": "wait", "type": "wait", "config": {"waitType": "event", "eventType": "email_replied"},
                 "edges": {"default": "done"}},
                {"node_id": "done", "type": "stop", "config": {"outcome": "replied"}},
            ],
        },
    )
    assert workflow.status_code == 201
    workflow_id = workflow.json()["workflow_id"]

    try:
        enrolled = api_client.post(f"/api/v1/workflows/{workflow_id}/enrollments", json={"entityId": entity_id})
        assert enrolled.status_code == 201
        assert enrolled.json()["status"] == "active"

        api_client.post("/api/v1/events", json={"type": "email_replied", "entityId": entity_id})

        final = poll_enrollment(entity_id, timeout=30)
        assert final["outcome"] == "replied"
    finally:
        api_client.delete(f"/api/v1/workflows/{workflow_id}")
