"""
Integration tests for the Case Workflow Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import datetime, timezone
from fastapi.testclient import TestClient

from conftest import ORG, make_report
from case_workflow.api import app, get_engine
from case_workflow.models import AssignmentTarget, RuleConditions, Urgency


CREATED = datetime(2025, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def client(engine, report_store):
    """Create a test client wired to the test engine"""
    report_store.add_report(make_report(urgency=Urgency.CRITICAL, created_at=CREATED, assigned_to="u0"))
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Test basic health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestWorkflowEngineEndpoint:
    """Test the single workflow-engine endpoint"""

    def test_auto_assign(self, client, engine):
        engine.rules.create_rule(ORG, "Security", 1, RuleConditions(urgency="critical"),
                                 AssignmentTarget.team("security"))
        r = client.post("/workflow-engine", json={
            "action": "auto_assign", "reportId": "r-1", "organizationId": ORG
        })
        assert r.status_code == 200
        assert r.json() == {"success": True, "assigned_to": "security", "rule_name": "Security"}

    def test_calculate_sla(self, client, engine):
        engine.policies.create_policy(ORG, "Fast", critical_response_time=4, is_default=True)
        r = client.post("/workflow-engine", json={
            "action": "calculate_sla", "reportId": "r-1", "organizationId": ORG
        })
        assert r.status_code == 200
        assert r.json()["sla_deadline"] == "2025-01-01T04:00:00+00:00"
        assert r.json()["hours"] == 4

    def test_escalate(self, client):
        r = client.post("/workflow-engine", json={
            "action": "escalate", "reportId": "r-1", "organizationId": ORG,
            "escalateTo": "u2", "reason": "Conflict of interest"
        })
        assert r.status_code == 200
        assert r.json()["assigned_to"] == "u2"

    def test_invalid_request(self, client):
        r = client.post("/workflow-engine", json={"action": "auto_assign"})
        assert r.status_code == 400
        body = r.json()
        assert body["success"] is False
        assert body["error_code"] == "invalid_request"

    def test_non_object_body(self, client):
        r = client.post("/workflow-engine", json=["auto_assign"])
        assert r.status_code == 400

    def test_report_not_found(self, client):
        r = client.post("/workflow-engine", json={
            "action": "auto_assign", "reportId": "missing", "organizationId": ORG
        })
        assert r.status_code == 404

    def test_no_default_policy(self, client):
        r = client.post("/workflow-engine", json={
            "action": "calculate_sla", "reportId": "r-1", "organizationId": ORG
        })
        assert r.status_code == 409
        assert r.json()["error_code"] == "no_default_policy"


class TestDashboardEndpoints:
    """Test read-only views and the sweep trigger"""

    def test_rules(self, client, engine):
        engine.rules.create_rule(ORG, "Legal", 1, target=AssignmentTarget.team("legal"))
        r = client.get(f"/organizations/{ORG}/rules")
        assert r.status_code == 200
        assert r.json()["rules"][0]["assign_to_team"] == "legal"

    def test_sla_policies(self, client, engine):
        engine.policies.create_policy(ORG, "Standard", is_default=True)
        r = client.get(f"/organizations/{ORG}/sla-policies")
        assert [p["name"] for p in r.json()["policies"]] == ["Standard"]

    def test_history(self, client, engine):
        engine.escalate(ORG, "r-1", escalate_to="u2")
        r = client.get(f"/organizations/{ORG}/reports/r-1/history")
        assert r.status_code == 200
        assert len(r.json()["escalations"]) == 1

    def test_history_not_found(self, client):
        r = client.get(f"/organizations/{ORG}/reports/unknown/history")
        assert r.status_code == 404

    def test_sweep(self, client, engine, clock):
        engine.policies.create_policy(ORG, "Escalating", critical_response_time=4, is_default=True,
                                      escalate_after_breach=True, escalate_to_user_id="U1")
        engine.calculate_sla(ORG, "r-1")
        clock.now = datetime(2025, 1, 2, tzinfo=timezone.utc)

        r = client.post(f"/workflow-engine/sweep/{ORG}")
        assert r.status_code == 200
        body = r.json()
        assert body["checked"] == 1
        assert body["breached"] == 1
        assert body["escalated"] == 1

    def test_verify_log(self, client, engine):
        engine.escalate(ORG, "r-1", escalate_to="u2")
        r = client.get(f"/organizations/{ORG}/workflow-log/verify")
        assert r.json()["valid"] is True
