import pytest
from fastapi.testclient import TestClient

from library_assistant import server
from library_assistant.core.config import AssistantConfig
from library_assistant.core.state_machine import SessionState
from library_assistant.services.registry import SessionRegistry


@pytest.fixture
def client() -> TestClient:
    return TestClient(server.app)


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert "active_sessions" in body


def test_unknown_session(client: TestClient) -> None:
    assert client.get("/session/nope").json() == {"error": "session not found"}


def test_ping_pong(client: TestClient) -> None:
    with client.websocket_connect("/ws/assistant") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_start_without_credentials_reports_error(client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr(server, "assistant_cfg", AssistantConfig(api_key="", replica_id=""))

    with client.websocket_connect("/ws/assistant") as ws:
        ws.send_json({"type": "start_session", "books": []})
        status = ws.receive_json()
        error = ws.receive_json()

    assert status["type"] == "status"
    assert "not configured" in status["message"]
    assert error["type"] == "error"


def test_invalid_catalog_rejected(client: TestClient) -> None:
    with client.websocket_connect("/ws/assistant") as ws:
        ws.send_json({"type": "start_session", "books": "not a list"})
        message = ws.receive_json()

    assert message["type"] == "error"
    assert "Invalid book catalog" in message["message"]


def test_parse_catalog_accepts_camel_case() -> None:
    books = server.parse_catalog([{
        "title": "Counting to Ten",
        "author": "Eve Small",
        "subject": "MATHS",
        "difficultyLevel": "beginner",
        "targetAgeMin": 3,
        "targetAgeMax": 5,
    }])
    assert books[0].difficulty_level == "beginner"
    assert books[0].target_age_max == 5


@pytest.mark.asyncio
async def test_registry_lifecycle(provider, transport) -> None:
    registry = SessionRegistry()
    controller = registry.create("s1", provider=provider, transport=transport)

    with pytest.raises(ValueError):
        registry.create("s1", provider=provider, transport=transport)
    assert registry.get("s1") is controller
    assert registry.active_count == 1

    summary = await registry.stop_session("s1")

    assert summary["session_state"] == SessionState.IDLE.value
    assert registry.active_count == 0
    assert await registry.stop_session("s1") is None


def test_controls_need_a_session(client: TestClient) -> None:
    with client.websocket_connect("/ws/assistant") as ws:
        ws.send_json({"type": "stop_session"})
        message = ws.receive_json()

    assert message == {"type": "error", "message": "No active session"}
