# tests/crm_api/routers/test_workflows_api.py
WORKFLOW = {
    "name": "Reply chaser",
    "entryNodeId": "send",
    "nodes": [
        {
            "node_id": "send",
            "type": "send",
            "config": {"subject": "Quick question, {{name}}", "body": "Do you have a minute?"},
            "edges": {"default": "wait", "suppressed": "skip"},
        },
        {
            "node_id": "wait",
            "type": "wait",
            "config": {"waitType": "event", "eventType": "email_replied", "timeoutDays": 4},
            "edges": {"default": "replied", "timeout": "no_reply"},
        },
        {"node_id": "replied", "type": "stop", "config": {"outcome": "replied"}},
        {"node_id": "no_reply", "type": "stop", "config": {"outcome": "no_reply"}},
        {"node_id": "skip", "type": "stop", "config": {"outcome": "suppressed"}},
    ],
}


def _active_workflow(client):
    response = client.post("/api/v1/workflows", json={**WORKFLOW, "status": "active"})
    assert response.status_code == 201, response.text
    return response.json()


class TestWorkflowRoutes:
    """Test /api/v1/workflows endpoints."""

    def test_create_draft_with_problems(self, client):
        response = client.post("/api/v1/workflows", json={**WORKFLOW, "entryNodeId": "ghost"})
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "draft"
        assert "entry node 'ghost' does not exist" in body["problems"]

        validation = client.post(f"/api/v1/workflows/{body['workflow_id']}/validate").json()
        assert validation["valid"] is False

        activate = client.post(f"/api/v1/workflows/{body['workflow_id']}/status", json={"status": "active"})
        assert activate.status_code == 400

    def test_create_active_invalid(self, client):
        response = client.post("/api/v1/workflows", json={**WORKFLOW, "entryNodeId": "ghost", "status": "active"})
        assert response.status_code == 400

    def test_get_update_delete(self, client):
        workflow = _active_workflow(client)
        workflow_id = workflow["workflow_id"]

        assert client.get(f"/api/v1/workflows/{workflow_id}").json()["problems"] == []
        updated = client.put(f"/api/v1/workflows/{workflow_id}", json={"name": "Reply chaser v2"})
        assert updated.json()["version"] == 2

        assert client.get("/api/v1/workflows", params={"status": "active"}).json()["total"] == 1
        assert client.delete(f"/api/v1/workflows/{workflow_id}").status_code == 204
        assert client.get(f"/api/v1/workflows/{workflow_id}").status_code == 404

    def test_enroll_and_reply(self, client):
        client.put("/api/v1/entities/c1", json={"name": "Ada", "email": "ada@example.com"})
        workflow = _active_workflow(client)

        response = client.post(f"/api/v1/workflows/{workflow['workflow_id']}/enrollments", json={"entityId": "c1"})
        assert response.status_code == 201
        enrollment = response.json()
        assert enrollment["created"] is True
        assert enrollment["current_node_id"] == "wait"

        again = client.post(f"/api/v1/workflows/{workflow['workflow_id']}/enrollments", json={"entityId": "c1"})
        assert again.json()["created"] is False

        ingest = client.post("/api/v1/events", json={"type": "email_replied", "entityId": "c1"})
        assert ingest.json()["resumed_enrollments"] == [enrollment["enrollment_id"]]

        listed = client.get("/api/v1/workflows/enrollments", params={"entity_id": "c1"}).json()
        assert listed["total"] == 1
        assert listed["enrollments"][0]["outcome"] == "replied"

    def test_enroll_suppressed_contact(self, client):
        client.put("/api/v1/entities/c1", json={"email": "ada@example.com"})
        client.post("/api/v1/events", json={"type": "email_unsubscribed", "entityId": "c1"})
        workflow = _active_workflow(client)

        response = client.post(f"/api/v1/workflows/{workflow['workflow_id']}/enrollments", json={"entityId": "c1"})
        assert response.json()["status"] == "completed"
        assert response.json()["outcome"] == "suppressed"

    def test_enroll_unknown_workflow(self, client):
        response = client.post("/api/v1/workflows/nope/enrollments", json={"entityId": "c1"})
        assert response.status_code == 404

    def test_enrollment_transitions(self, client):
        client.put("/api/v1/entities/c1", json={"email": "ada@example.com"})
        workflow = _active_workflow(client)
        enrollment = client.post(
            f"/api/v1/workflows/{workflow['workflow_id']}/enrollments", json={"entityId": "c1"}
        ).json()
        base = f"/api/v1/workflows/enrollments/{enrollment['enrollment_id']}"

        assert client.post(f"{base}/pause").json()["status"] == "paused"
        assert client.post(f"{base}/pause").status_code == 409
        assert client.post(f"{base}/resume").json()["status"] == "active"

        stopped = client.post(f"{base}/stop").json()
        assert stopped["status"] == "stopped"
        assert stopped["outcome"] == "stopped_manually"
        assert client.post(f"{base}/resume").status_code == 409

        assert client.post("/api/v1/workflows/enrollments/nope/stop").status_code == 404
