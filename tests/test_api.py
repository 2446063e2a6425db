"""Tests for the REST API and health endpoints."""

import pytest
from fastapi.testclient import TestClient

from agentflow.config import get_testing_config
from agentflow.factory import create_app
from agentflow.storage.database import reset_database_engine

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}

APPROVAL_TEMPLATE = {
    "name": "Weekly report",
    "mode": "Sales",
    "steps": [
        {"id": "draft", "type": "ai_prompt", "config": {"prompt": "Summarize {{topic}}"}, "connections": ["review"]},
        {"id": "review", "type": "approval", "config": {"message": "Send it?"}, "connections": ["send"]},
        {"id": "send", "type": "tool_call", "config": {"tool": "echo", "params": {"message": "{{step_1_output}}"}}},
    ],
    "input_schema": {"required": ["topic"]},
}


@pytest.fixture
def client(fake_llm):
    """Test client backed by an in-memory database and a fake language model."""
    app = create_app(get_testing_config(), llm_client=fake_llm)
    with TestClient(app) as test_client:
        yield test_client
    reset_database_engine()


@pytest.fixture
def template_id(client):
    response = client.post("/api/v1/templates", json=APPROVAL_TEMPLATE, headers=ALICE)
    assert response.status_code == 201
    return response.json()["template"]["template_id"]


@pytest.fixture
def paused_execution_id(client, template_id):
    response = client.post(f"/api/v1/templates/{template_id}/run", json={"inputs": {"topic": "sales"}}, headers=ALICE)
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "paused"
    assert body["paused_step_id"] == "review"
    return body["execution_id"]


class TestAuthentication:

    def test_user_header_required(self, client):
        response = client.get("/api/v1/templates")
        assert response.status_code == 401

    def test_blank_user_header(self, client):
        response = client.get("/api/v1/templates", headers={"X-User-Id": "  "})
        assert response.status_code == 401


class TestTemplateEndpoints:
    """Test cases for /api/v1/templates."""

    def test_create_returns_template_and_warnings(self, client):
        payload = {
            "name": "Branchy",
            "steps": [
                {"id": "a", "type": "delay", "config": {"delay": 0}, "connections": ["b", "c"]},
                {"id": "b", "type": "delay"},
                {"id": "c", "type": "delay"},
            ],
        }
        response = client.post("/api/v1/templates", json=payload, headers=ALICE)

        assert response.status_code == 201
        body = response.json()
        assert body["template"]["user_id"] == "alice"
        assert body["template"]["steps"][0]["type"] == "delay"
        assert any("only the first is followed" in w for w in body["validation_warnings"])

    def test_create_invalid_structure(self, client):
        payload = {"name": "Bad", "steps": [{"id": "a", "type": "delay", "connections": ["missing"]}]}
        response = client.post("/api/v1/templates", json=payload, headers=ALICE)
        assert response.status_code == 422

    def test_create_rejected_by_validation(self, client):
        payload = {"name": "No tool", "steps": [{"id": "a", "type": "tool_call"}]}
        response = client.post("/api/v1/templates", json=payload, headers=ALICE)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "TemplateValidationError"

    def test_get_list_and_visibility(self, client, template_id):
        assert client.get(f"/api/v1/templates/{template_id}", headers=ALICE).status_code == 200
        assert client.get(f"/api/v1/templates/{template_id}", headers=BOB).status_code == 404

        summaries = client.get("/api/v1/templates", headers=ALICE).json()
        assert [s["template_id"] for s in summaries] == [template_id]
        assert summaries[0]["step_count"] == 3

    def test_update_and_delete(self, client, template_id):
        changed = {**APPROVAL_TEMPLATE, "name": "Renamed", "is_public": True}
        response = client.put(f"/api/v1/templates/{template_id}", json=changed, headers=ALICE)
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"

        assert client.put(f"/api/v1/templates/{template_id}", json=changed, headers=BOB).status_code == 403
        assert client.delete(f"/api/v1/templates/{template_id}", headers=BOB).status_code == 403

        assert client.delete(f"/api/v1/templates/{template_id}", headers=ALICE).status_code == 204
        assert client.get(f"/api/v1/templates/{template_id}", headers=ALICE).status_code == 404


class TestRunAndApproval:

    def test_run_missing_required_input(self, client, template_id):
        response = client.post(f"/api/v1/templates/{template_id}/run", json={"inputs": {}}, headers=ALICE)
        assert response.status_code == 400
        assert "topic" in response.json()["detail"]["message"]
        assert client.get("/api/v1/executions", headers=ALICE).json() == []

    def test_approve_resumes_to_completion(self, client, paused_execution_id, fake_llm):
        response = client.post(
            f"/api/v1/executions/{paused_execution_id}/approval",
            json={"step_id": "review", "action": "approve", "feedback": "Ship it"},
            headers=ALICE,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "approve"
        assert body["next_step_id"] == "send"
        assert body["status"] == "success"
        assert body["result"]["steps_completed"] == 3
        assert fake_llm.calls[0]["prompt"] == "Summarize sales"

        steps = client.get(f"/api/v1/executions/{paused_execution_id}/steps", headers=ALICE).json()
        assert [s["status"] for s in steps] == ["success", "success", "success"]
        assert steps[2]["result"] == {"message": "summary"}

    def test_reject(self, client, paused_execution_id):
        response = client.post(
            f"/api/v1/executions/{paused_execution_id}/approval",
            json={"step_id": "review", "action": "reject"},
            headers=ALICE,
        )

        body = response.json()
        assert body["status"] == "failed"
        assert body["completed"] is True
        assert body["result"] is None

        execution = client.get(f"/api/v1/executions/{paused_execution_id}", headers=ALICE).json()
        assert execution["error_step_id"] == "review"

    def test_invalid_action(self, client, paused_execution_id):
        response = client.post(
            f"/api/v1/executions/{paused_execution_id}/approval",
            json={"step_id": "review", "action": "maybe"},
            headers=ALICE,
        )
        assert response.status_code == 422

    def test_other_user_cannot_approve_or_read(self, client, paused_execution_id):
        response = client.post(
            f"/api/v1/executions/{paused_execution_id}/approval",
            json={"step_id": "review", "action": "approve"},
            headers=BOB,
        )
        assert response.status_code == 403
        assert client.get(f"/api/v1/executions/{paused_execution_id}", headers=BOB).status_code == 403
        assert client.get(f"/api/v1/executions/{paused_execution_id}/audit", headers=BOB).status_code == 403

    def test_cancel_paused_execution(self, client, paused_execution_id):
        response = client.post(f"/api/v1/executions/{paused_execution_id}/cancel", headers=ALICE)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = client.post(f"/api/v1/executions/{paused_execution_id}/cancel", headers=ALICE)
        assert again.status_code == 409

        approve = client.post(
            f"/api/v1/executions/{paused_execution_id}/approval",
            json={"step_id": "review", "action": "approve"},
            headers=ALICE,
        )
        assert approve.status_code == 409

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/missing", headers=ALICE).status_code == 404

    def test_audit_trail(self, client, paused_execution_id):
        logs = client.get(f"/api/v1/executions/{paused_execution_id}/audit", headers=ALICE).json()
        actions = [log["action_type"] for log in logs]
        assert actions.count("workflow_start") == 1
        assert "ai_decision" in actions
        assert "user_intervention" in actions


class TestListingAndBilling:

    def test_list_filters_by_status(self, client, paused_execution_id):
        paused = client.get("/api/v1/executions", params={"status": "paused"}, headers=ALICE).json()
        assert [e["execution_id"] for e in paused] == [paused_execution_id]
        assert client.get("/api/v1/executions", params={"status": "success"}, headers=ALICE).json() == []
        assert client.get("/api/v1/executions", headers=BOB).json() == []

    def test_billing_and_stats_after_completion(self, client, paused_execution_id):
        client.post(
            f"/api/v1/executions/{paused_execution_id}/approval",
            json={"step_id": "review", "action": "approve"},
            headers=ALICE,
        )

        records = client.get("/api/v1/billing/records", headers=ALICE).json()
        assert len(records) == 1
        assert records[0]["tokens_input"] == 60
        assert records[0]["tokens_output"] == 40

        summary = client.get("/api/v1/billing/summary", headers=ALICE).json()
        assert summary["record_count"] == 1
        assert summary["total_tokens"] == 100

        stats = client.get("/api/v1/stats", headers=ALICE).json()
        assert stats["total_executions"] == 1
        assert stats["successful_executions"] == 1

        by_mode = client.get("/api/v1/stats/cost-by-mode", headers=ALICE).json()
        assert by_mode[0]["mode"] == "Sales"

    def test_billing_period_format(self, client):
        response = client.get("/api/v1/billing/summary", params={"period": "2024/01"}, headers=ALICE)
        assert response.status_code == 422


class TestHealthEndpoints:

    def test_root_and_liveness(self, client):
        assert client.get("/").status_code == 200
        assert client.get("/health").json()["status"] == "healthy"
        assert client.get("/health/live").json()["alive"] is True

    def test_detailed_and_readiness(self, client):
        detailed = client.get("/health/detailed")
        assert detailed.status_code == 200
        assert set(detailed.json()["checks"]) == {"database", "ledger", "tool_registry"}

        ready = client.get("/health/ready")
        assert ready.status_code == 200
        assert ready.json()["ready"] is True

    def test_request_id_header(self, client):
        response = client.get("/health")
        assert "X-Request-ID" in response.headers
