"""Tests for the HTTP API."""

from __future__ import annotations

import pytest
from conftest import API_KEY, COMPANY_ID
from fastapi.testclient import TestClient

from cascade import __version__
from cascade.studio.server import app, configure


@pytest.fixture
def client(engine, company) -> TestClient:
    configure(engine)
    return TestClient(app)


class TestIngestEndpoint:
    def test_created(self, client):
        response = client.post("/ingest", json={"data": {"revenue": 100}}, headers={"X-API-Key": API_KEY})
        assert response.status_code == 201
        body = response.json()
        assert body["cascade"]["executed"] == ["A", "B", "C"]
        assert body["results"]["A"] == {"revenue": 100}

    def test_unchanged_resubmission(self, client):
        client.post("/ingest", json={"data": {"revenue": 100}}, headers={"X-API-Key": API_KEY})
        response = client.post("/ingest", json={"data": {"revenue": 100}}, headers={"X-API-Key": API_KEY})
        assert response.status_code == 201
        assert response.json()["cascade"]["executed"] == []

    def test_missing_key(self, client):
        response = client.post("/ingest", json={"data": {}})
        assert response.status_code == 401
        assert response.json() == {"error": "Missing API key"}

    def test_invalid_json(self, client):
        response = client.post(
            "/ingest",
            content=b"not json",
            headers={"X-API-Key": API_KEY, "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_rate_limited(self, client, temp_db):
        temp_db.create_company(
            "Tiny", api_key="csk_tiny", rate_limit_rpm=1, assigned_workflow_id="wf-linear",
            company_id="tiny",
        )
        client.post("/ingest", json={"data": {"n": 1}}, headers={"X-API-Key": "csk_tiny"})
        response = client.post("/ingest", json={"data": {"n": 2}}, headers={"X-API-Key": "csk_tiny"})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"


class TestNodesEndpoint:
    """Re-testing nodes over HTTP."""

    def test_retest(self, client):
        client.post("/ingest", json={"data": {"revenue": 100}}, headers={"X-API-Key": API_KEY})
        response = client.post(
            "/test-nodes", json={"workflowId": "wf-linear", "nodeIds": ["B"], "companyId": COMPANY_ID}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert list(body["results"]) == ["B"]
        assert body["results"]["B"]["cached"] is False
        assert body["results"]["B"]["executedAt"] is not None
        assert body["stats"]["errors"] == 0
        assert "errors" not in body

    def test_company_required_without_default(self, client):
        response = client.post("/test-nodes", json={"workflowId": "wf-linear", "nodeIds": ["B"]})
        assert response.status_code == 400

    def test_default_company(self, engine, company):
        engine.config.default_company_id = COMPANY_ID
        configure(engine)
        response = TestClient(app).post("/test-nodes", json={"workflowId": "wf-linear", "nodeIds": ["C"]})
        assert response.status_code == 200

    def test_empty_node_list(self, client):
        response = client.post(
            "/test-nodes", json={"workflowId": "wf-linear", "nodeIds": [], "companyId": COMPANY_ID}
        )
        assert response.status_code == 422

    def test_unknown_workflow(self, client):
        response = client.post(
            "/test-nodes", json={"workflowId": "nope", "nodeIds": ["B"], "companyId": COMPANY_ID}
        )
        assert response.status_code == 404

    def test_unknown_node(self, client):
        response = client.post(
            "/test-nodes", json={"workflowId": "wf-linear", "nodeIds": ["Z"], "companyId": COMPANY_ID}
        )
        assert response.status_code == 400


class TestRunsAndAlerts:
    def test_run_status(self, client):
        client.post("/ingest", json={"data": {"revenue": 100}}, headers={"X-API-Key": API_KEY})
        run_id = client.post(
            "/test-nodes", json={"workflowId": "wf-linear", "nodeIds": ["C"], "companyId": COMPANY_ID}
        ).json()["runId"]

        response = client.get(f"/runs/{run_id}")
        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["trigger"] == "retest"

        cancel = client.post(f"/runs/{run_id}/cancel")
        assert cancel.status_code == 400

    def test_unknown_run(self, client):
        assert client.get("/runs/missing").status_code == 404
        assert client.post("/runs/missing/cancel").status_code == 404

    def test_cancel_running(self, client, temp_db):
        run_id = temp_db.create_run(COMPANY_ID, "wf-linear", "manual")
        response = client.post(f"/runs/{run_id}/cancel")
        assert response.json() == {"status": "cancelling", "run_id": run_id}

    def test_alerts(self, client, engine):
        alert = engine.alerts.model_unavailable("openai/gpt-9", 404, "gone")

        listed = client.get("/alerts").json()
        assert [a["title"] for a in listed] == ["Model Not Found: openai/gpt-9"]

        assert client.post(f"/alerts/{alert.id}/resolve").json() == {"status": "resolved", "id": alert.id}
        assert client.post(f"/alerts/{alert.id}/resolve").status_code == 400
        assert client.post("/alerts/999/resolve").status_code == 404
        assert client.get("/alerts").json() == []
        assert len(client.get("/alerts", params={"include_resolved": True}).json()) == 1

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "version": __version__}
