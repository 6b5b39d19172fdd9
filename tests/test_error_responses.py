"""Tests for API error response formats."""

from typing import Any

from fastapi.testclient import TestClient

import courseflow.api.app as app_module
from courseflow.api.app import create_app
from courseflow.api.deps import get_action_store, get_ledger, get_planner, get_template_store


class FakeActionStore:
    """Minimal action store for error response tests."""

    async def get(self, action_id: str) -> Any | None:
        return None


class FakeLedger:
    async def get(self, record_id: str) -> Any | None:
        return None


class FakeTemplateStore:
    async def get(self, template_id: str) -> Any | None:
        return None


def _make_client(monkeypatch) -> TestClient:
    async def _noop() -> None:
        return None

    monkeypatch.setattr(app_module, "init_redis_pool", _noop)
    monkeypatch.setattr(app_module, "close_redis_pool", _noop)

    app = create_app()
    app.dependency_overrides[get_action_store] = lambda: FakeActionStore()
    app.dependency_overrides[get_ledger] = lambda: FakeLedger()
    app.dependency_overrides[get_template_store] = lambda: FakeTemplateStore()
    app.dependency_overrides[get_planner] = lambda: None
    return TestClient(app)


def test_not_found_response_format(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.get("/api/v1/actions/act_missing")

    assert response.status_code == 404
    payload = response.json()
    assert payload["code"] == 404
    assert payload["message"] == "Flow action act_missing not found"
    assert payload["data"] is None


def test_missing_execution_response_format(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.get("/api/v1/executions/act_missing:enr_1")

    assert response.status_code == 404
    assert response.json()["message"] == "Execution record act_missing:enr_1 not found"


def test_validation_error_response_format(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.post("/api/v1/actions", json={"title": ""})

    assert response.status_code == 422
    payload = response.json()
    assert payload["code"] == 422
    assert payload["message"] == "Validation error"
    assert isinstance(payload["data"], list)
    assert payload["data"]


def test_trigger_validator_error_is_serializable(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.post(
        "/api/v1/actions",
        json={
            "organization_id": "org_1",
            "scope": {"scope_type": "session", "scope_id": "session_1"},
            "title": "Reminder",
            "channel": {"type": "webhook", "destination": "https://hooks.example.com/flow"},
            "recipient_role": "learner",
            "trigger": {"reference_event": "start", "direction": "on", "day_offset": 2},
        },
    )

    assert response.status_code == 422
    assert "day_offset" in response.text


def test_validate_route_is_not_shadowed(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.post("/api/v1/actions/validate", json={"action": {"title": "x"}})

    assert response.status_code == 200
    payload = response.json()
    assert payload["code"] == 0
    assert payload["data"]["valid"] is False


def test_health_check(monkeypatch) -> None:
    client = _make_client(monkeypatch)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
