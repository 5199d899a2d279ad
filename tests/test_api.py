"""
Tests for the assistant HTTP endpoints
"""

import pytest
from fastapi.testclient import TestClient

from api.main import app
from database import crud
from database.connection import get_db_session


@pytest.fixture
def client(seed, monkeypatch):
    """Test client bound to the seeded session, with local parsing only."""
    monkeypatch.setattr("src.conversation.flow_manager.get_completion_client", lambda: None)

    def override_db_session():
        yield seed.db

    app.dependency_overrides[get_db_session] = override_db_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def owner_headers(seed):
    return {"X-User-Id": str(seed.owner.id)}


def _url(seed, path):
    return f"/api/projects/{seed.project.id}/assistant/{path}"


class TestAssistantEndpoints:
    """Tests for message, execute, snapshot and history routes."""

    def test_health(self, client):
        """Test the health check."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_question(self, client, seed, owner_headers):
        """Test a question round trip."""
        response = client.post(
            _url(seed, "messages"), json={"message": "Who is the project owner?"}, headers=owner_headers
        )
        assert response.status_code == 200
        body = response.json()
        assert body["type"] == "information"
        assert body["message"] == "Project owner: Olivia Owner (olivia@example.com)"
        assert body["command_data"] is None

    def test_command_then_execute(self, client, seed, owner_headers):
        """Test previewing a command and executing the returned plan."""
        preview = client.post(
            _url(seed, "messages"),
            json={"message": "assign all unassigned tasks to Bob", "session_id": "web"},
            headers=owner_headers,
        ).json()
        assert preview["type"] == "command"
        assert preview["requires_confirmation"] is True

        result = client.post(
            _url(seed, "execute"),
            json={"command_data": preview["command_data"], "session_id": "web"},
            headers=owner_headers,
        )

        assert result.status_code == 200
        body = result.json()
        assert body["message"] == "👤 Assigned 2 task(s) to Bob Jones."
        assert body["data"]["tasks"]["total"] == 5
        assert crud.get_project_task(seed.db, seed.project.id, 5).assignee_id == seed.bob.id

    def test_execute_error(self, client, seed):
        """Test typed errors from execute are returned in the body."""
        response = client.post(
            _url(seed, "execute"),
            json={"command_data": {"type": "update_project", "changes": {"name": "Nope"}}},
            headers={"X-User-Id": str(seed.alice.id)},
        )
        assert response.status_code == 200
        assert response.json()["type"] == "error"
        assert response.json()["error_code"] == "AUTH_002"

    def test_unknown_project(self, client, owner_headers):
        """Test unknown projects return 404."""
        response = client.post("/api/projects/999/assistant/messages", json={"message": "hi"}, headers=owner_headers)
        assert response.status_code == 404

    def test_disabled_assistant(self, client, seed, owner_headers):
        """Test projects with the assistant switched off return 403."""
        crud.update_project(seed.db, seed.project.id, assistant_enabled=False)
        response = client.post(_url(seed, "messages"), json={"message": "project overview"}, headers=owner_headers)
        assert response.status_code == 403

    def test_snapshot(self, client, seed):
        """Test the snapshot route."""
        body = client.get(_url(seed, "snapshot")).json()
        assert body["tasks"]["total"] == 5
        assert body["tasks"]["overdue"] == 2

    def test_history_and_clear(self, client, seed, owner_headers):
        """Test reading and clearing a session."""
        client.post(_url(seed, "messages"), json={"message": "project overview", "session_id": "s"},
                    headers=owner_headers)

        history = client.get(_url(seed, "history/s")).json()
        assert history["session_id"] == "s"
        assert [m["role"] for m in history["messages"]] == ["user", "assistant"]
        assert history["messages"][0]["content"] == "project overview"

        limited = client.get(_url(seed, "history/s"), params={"limit": 1}).json()
        assert [m["role"] for m in limited["messages"]] == ["assistant"]

        cleared = client.delete(_url(seed, "history/s")).json()
        assert cleared == {"session_id": "s", "deleted": 2}
        assert client.get(_url(seed, "history/s")).json()["messages"] == []
