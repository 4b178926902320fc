"""
Tests for the FastAPI endpoints.

The pipeline global is replaced with a fixture-built pipeline so requests
never reach real providers. Background tasks run before TestClient returns,
so a generate call is complete by the time its status is polled.
"""

import pytest
from fastapi.testclient import TestClient

import trip_pipeline.api.main as api_main
from trip_pipeline.core.config import get_settings
from trip_pipeline.core.exceptions import ProviderError


@pytest.fixture
def client(monkeypatch, pipeline, settings):
    monkeypatch.setattr(api_main, "pipeline", pipeline)
    api_main.app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(api_main.app)
    api_main.app.dependency_overrides.clear()


def generate(client, form, headers=None, session_id=None):
    body = {"formData": form}
    if session_id:
        body["sessionId"] = session_id
    return client.post("/api/itinerary/generate", json=body, headers=headers or {})


class TestGenerate:
    """POST /api/itinerary/generate"""

    def test_generate_then_poll(self, client, sample_form):
        response = generate(client, sample_form)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["workflowId"].startswith("workflow_")
        assert data["sessionId"].startswith("session_")
        assert data["statusEndpoint"] == f"http://testserver/api/itinerary/status/{data['workflowId']}"
        assert data["estimatedCompletion"]

        status = client.get(f"/api/itinerary/status/{data['workflowId']}")
        assert status.status_code == 200
        body = status.json()
        assert body["status"] == "complete"
        assert body["progress"] == 100
        assert body["result"]["itinerary"]["title"] == "Lisbon Long Weekend"
        assert body["result"]["sessionId"] == data["sessionId"]

    def test_session_is_reused(self, client, sample_form):
        first = generate(client, sample_form, headers={"X-User-Id": "alice"}).json()
        second = generate(client, sample_form, headers={"X-User-Id": "alice"}, session_id=first["sessionId"]).json()

        assert second["sessionId"] == first["sessionId"]
        assert second["workflowId"] != first["workflowId"]

    @pytest.mark.parametrize("body", [{}, {"formData": None}, {"formData": {}}, {"formData": "Lisbon"}])
    def test_missing_or_malformed_form_data(self, client, body):
        response = client.post("/api/itinerary/generate", json=body)

        assert response.status_code == 400

    def test_invalid_field_type(self, client, sample_form):
        response = generate(client, dict(sample_form, adults="many"))

        assert response.status_code == 400
        assert "adults" in response.json()["detail"]

    def test_non_json_body(self, client):
        response = client.post(
            "/api/itinerary/generate", content=b"not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400

    def test_foreign_session_is_forbidden(self, client, sample_form):
        owned = generate(client, sample_form, headers={"X-User-Id": "alice"}).json()

        response = generate(client, sample_form, headers={"X-User-Id": "bob"}, session_id=owned["sessionId"])

        assert response.status_code == 403

    def test_service_token(self, client, sample_form):
        owned = generate(client, sample_form, headers={"X-User-Id": "alice"}).json()

        ok = generate(
            client, sample_form, headers={"X-Service-Token": "test-service-token"}, session_id=owned["sessionId"]
        )
        assert ok.status_code == 200

        bad = generate(client, sample_form, headers={"X-Service-Token": "wrong"})
        assert bad.status_code == 401

    def test_degraded_run_reports_partial_data(self, client, sample_form, search_provider):
        search_provider.script = [ProviderError("mock-search", "down")]

        workflow_id = generate(client, sample_form).json()["workflowId"]
        result = client.get(f"/api/itinerary/status/{workflow_id}").json()["result"]

        assert result["partialData"] is True
        assert result["gaps"][0]["stage"] == "info-gather"


class TestStatus:
    """GET /api/itinerary/status/{workflowId}"""

    @pytest.mark.parametrize("workflow_id", ["not-a-workflow", "workflow_XYZ", "workflow_12"])
    def test_invalid_id_format(self, client, workflow_id):
        assert client.get(f"/api/itinerary/status/{workflow_id}").status_code == 400

    def test_unknown_workflow(self, client):
        response = client.get("/api/itinerary/status/workflow_0123456789abcdef")

        assert response.status_code == 404

    def test_repeated_polls_are_identical(self, client, sample_form):
        workflow_id = generate(client, sample_form).json()["workflowId"]

        first = client.get(f"/api/itinerary/status/{workflow_id}")
        second = client.get(f"/api/itinerary/status/{workflow_id}")

        assert first.content == second.content

    def test_failed_workflow_reports_error(self, client, sample_form):
        form = dict(sample_form)
        form.pop("location")

        workflow_id = generate(client, form).json()["workflowId"]
        body = client.get(f"/api/itinerary/status/{workflow_id}").json()

        assert body["status"] == "error"
        assert body["result"] is None
        assert "destination" in body["error"]
        assert body["currentStep"] == "Failed during Data Gatherer"

    def test_uninitialised_pipeline(self, client, monkeypatch):
        monkeypatch.setattr(api_main, "pipeline", None)

        response = client.get("/api/itinerary/status/workflow_0123456789abcdef")

        assert response.status_code == 503


class TestSessionEndpoints:
    """Budget summary and flush"""

    def test_budget_summary(self, client, sample_form):
        session_id = generate(client, sample_form, headers={"X-User-Id": "alice"}).json()["sessionId"]

        response = client.get(f"/api/session/{session_id}/budget", headers={"X-User-Id": "alice"})

        assert response.status_code == 200
        summary = response.json()
        assert summary["session_id"] == session_id
        assert summary["total_spent_usd"] == pytest.approx(0.0104)
        assert summary["limit_usd"] == 5.0
        assert summary["usage_records"] == 3
        assert summary["is_over_budget"] is False

    def test_budget_of_foreign_session(self, client, sample_form):
        session_id = generate(client, sample_form, headers={"X-User-Id": "alice"}).json()["sessionId"]

        response = client.get(f"/api/session/{session_id}/budget", headers={"X-User-Id": "bob"})

        assert response.status_code == 403

    def test_budget_of_unknown_session(self, client):
        assert client.get("/api/session/session_missing/budget").status_code == 404

    def test_flush(self, client, sample_form):
        session_id = generate(client, sample_form, headers={"X-User-Id": "alice"}).json()["sessionId"]

        forbidden = client.post(f"/api/session/{session_id}/flush", headers={"X-User-Id": "bob"})
        assert forbidden.status_code == 403

        response = client.post(f"/api/session/{session_id}/flush", headers={"X-User-Id": "alice"})
        assert response.status_code == 200
        assert response.json() == {"success": True, "sessionId": session_id, "state": "flushed"}

        # A flushed session is not revived
        again = generate(client, sample_form, headers={"X-User-Id": "alice"}, session_id=session_id).json()
        assert again["sessionId"] != session_id

    def test_flush_unknown_session(self, client):
        assert client.post("/api/session/session_missing/flush").status_code == 404


class TestOperationalEndpoints:
    """Providers status and health"""

    def test_providers_status(self, client):
        response = client.get("/api/providers/status")

        assert response.status_code == 200
        data = response.json()
        assert [provider["name"] for provider in data["providers"]] == ["mock-llm", "mock-search"]
        assert all(provider["circuit_state"] == "closed" for provider in data["providers"])
        assert data["open_circuits"] == 0

    def test_open_circuit_is_reported(self, client, pipeline):
        pipeline.health.get("mock-search").force_open()

        data = client.get("/api/providers/status").json()

        assert data["open_circuits"] == 1
        search = next(p for p in data["providers"] if p["name"] == "mock-search")
        assert search["circuit_state"] == "open"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["pipeline"] == "healthy"
        assert data["services"]["providers"] == "healthy"
        assert data["services"]["state_store"] == "InMemoryStateStore"
