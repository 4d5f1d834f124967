# backend/tests/integration/test_api.py
import pytest
from unittest.mock import AsyncMock

from flowbot.config.settings import settings
from flowbot.workflows.sessions import SessionBusy

API_PREFIX = f"/api/{settings.api_version}"
PROJECT_ID = "proj-1"


@pytest.fixture
def stored_flow(runtime, make_flow, edge):
    """A valid two-step flow saved straight into the in-memory store."""
    flow = make_flow(
        [
            {"id": "start", "type": "trigger.command", "config": {"command": "/start"}},
            {"id": "ask", "type": "flow.wait_input", "config": {"prompt": "Name?", "variable": "name"}},
            {"id": "echo", "type": "message", "config": {"text": "Hi {name}"}},
        ],
        [edge("start", "ask"), edge("ask", "echo")],
    )
    runtime.flows.flows[flow.id] = flow
    return flow


def post_event(client, chat_id="chat-1", **event):
    return client.post(f"{API_PREFIX}/events", json={"project_id": PROJECT_ID, "chat_id": chat_id, **event})


def test_health_check(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_readiness_with_memory_backends(test_client):
    response = test_client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["storage"] == "memory"


def test_metrics_endpoint(test_client):
    response = test_client.get("/metrics")
    assert response.status_code == 200
    assert "flow_event_seconds" in response.text


def test_validate_and_publish(test_client, stored_flow):
    validated = test_client.post(f"{API_PREFIX}/flows/{stored_flow.id}/validate")
    assert validated.status_code == 200
    assert validated.json()["success"] is True
    assert validated.json()["data"]["problems"] == []

    published = test_client.post(f"{API_PREFIX}/flows/{stored_flow.id}/publish")
    assert published.status_code == 200
    assert published.json()["data"]["version"] == 1


def test_publish_invalid_flow_returns_problems(test_client, runtime, make_flow, edge):
    flow = make_flow(
        [{"id": "hello", "type": "message", "config": {"text": "Hi"}}],
        [edge("hello", "ghost")],
    )
    runtime.flows.flows[flow.id] = flow

    response = test_client.post(f"{API_PREFIX}/flows/{flow.id}/publish")

    assert response.status_code == 422
    body = response.json()
    assert body["error_type"] == "authoring_error"
    assert "NO_TRIGGER" in {p["code"] for p in body["problems"]}


def test_unknown_flow_is_404(test_client):
    response = test_client.post(f"{API_PREFIX}/flows/missing/validate")
    assert response.status_code == 404
    assert response.json()["error_type"] == "flow_not_found"


def test_event_round_trip(test_client, stored_flow, messenger):
    test_client.post(f"{API_PREFIX}/flows/{stored_flow.id}/publish")

    started = post_event(test_client, kind="command", text="/start")
    assert started.status_code == 200
    assert started.json()["data"]["status"] == "waiting"

    answered = post_event(test_client, kind="text", text="Ada")
    data = answered.json()["data"]
    assert data["status"] == "completed"
    assert messenger.sent[-1]["text"] == "Hi Ada"

    detail = test_client.get(f"{API_PREFIX}/executions/{data['execution_id']}")
    assert detail.status_code == 200
    assert [s["node_id"] for s in detail.json()["data"]["steps"]] == ["ask", "ask", "echo"]

    listed = test_client.get(f"{API_PREFIX}/flows/{stored_flow.id}/executions", params={"status": "completed"})
    assert listed.json()["data"]["total"] == 1


def test_ignored_event_is_reported(test_client):
    response = post_event(test_client, kind="text", text="hello")
    assert response.status_code == 200
    assert response.json()["message"] == "Event ignored"
    assert response.json()["data"]["reason"] == "no_active_flow"


@pytest.mark.parametrize("kind", ["timeout", "restart"])
def test_runtime_event_kinds_cannot_be_delivered(test_client, kind):
    response = post_event(test_client, kind=kind)
    assert response.status_code == 422


def test_malformed_event_is_rejected(test_client):
    response = post_event(test_client, kind="callback")
    assert response.status_code == 422


def test_busy_session_returns_503(test_client, runtime, mocker):
    mocker.patch.object(runtime.engine, "handle_event", AsyncMock(side_effect=SessionBusy("busy")))
    response = post_event(test_client, kind="text", text="hello")
    assert response.status_code == 503


def test_restart_and_cancel_endpoints(test_client, stored_flow):
    test_client.post(f"{API_PREFIX}/flows/{stored_flow.id}/publish")
    execution_id = post_event(test_client, kind="command", text="/start").json()["data"]["execution_id"]

    cancelled = test_client.post(f"{API_PREFIX}/executions/{execution_id}/cancel")
    assert cancelled.json()["data"]["status"] == "cancelled"

    restarted = test_client.post(f"{API_PREFIX}/executions/{execution_id}/restart")
    assert restarted.status_code == 200
    assert restarted.json()["data"]["status"] == "waiting"

    bad_node = test_client.post(f"{API_PREFIX}/executions/{execution_id}/restart", json={"from_node_id": "ghost"})
    assert bad_node.status_code == 409


def test_unknown_execution_is_404(test_client):
    assert test_client.get(f"{API_PREFIX}/executions/missing").status_code == 404
    assert test_client.post(f"{API_PREFIX}/executions/missing/restart").status_code == 404


def test_api_key_is_enforced_when_configured(test_client, mocker):
    mocker.patch.object(settings, "api_key", "secret-key")

    assert post_event(test_client, kind="text", text="hi").status_code == 403
    allowed = test_client.post(
        f"{API_PREFIX}/events",
        json={"project_id": PROJECT_ID, "chat_id": "chat-1", "kind": "text", "text": "hi"},
        headers={"X-API-KEY": "secret-key"},
    )
    assert allowed.status_code == 200
