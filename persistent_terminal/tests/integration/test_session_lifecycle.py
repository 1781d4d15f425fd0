"""
Integration Tests for the Persistent Terminal Service.

End-to-end testing through the FastAPI app with real components, except
dtach itself (replaced by the fake bridge from conftest).

Test Coverage:
- Full session lifecycle over the WebSocket protocol
- PIN authentication gate
- Multi-client broadcast
- Session survival across application restarts
- REST and metrics endpoints
"""

import json

import pytest
from fastapi.testclient import TestClient

from persistent_terminal.core.auth import hash_pin
from persistent_terminal.main import create_app


@pytest.fixture
def app(config, bridge):
    return create_app(config, bridge=bridge)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def _sync(ws):
    """Round-trip a ping so every earlier message has been processed."""
    ws.send_json({"type": "ping"})
    assert ws.receive_json() == {"type": "pong"}


@pytest.mark.integration
class TestSessionLifecycle:
    """Integration tests for the full session lifecycle."""

    def test_greeting_without_pin(self, client):
        with client.websocket_connect("/") as ws:
            assert ws.receive_json() == {"type": "sessions", "sessions": []}

    def test_create_attach_input_terminate_delete(self, client, bridge):
        with client.websocket_connect("/") as ws:
            ws.receive_json()

            ws.send_json({"type": "create", "name": "alpha"})
            created = ws.receive_json()
            assert created["type"] == "created"
            session_id = created["sessionId"]
            listing = ws.receive_json()
            assert listing["sessions"][0]["status"] == "detached"

            ws.send_json({"type": "attach", "sessionId": session_id})
            assert ws.receive_json()["sessions"][0]["status"] == "running"
            assert ws.receive_json() == {
                "type": "attached",
                "sessionId": session_id,
                "name": "alpha",
                "status": "running",
            }

            ws.send_json({"type": "input", "data": "echo hi\r"})
            ws.send_json({"type": "resize", "cols": 100, "rows": 40})
            _sync(ws)
            assert bridge.handles[session_id].written == ["echo hi\r"]
            assert bridge.handles[session_id].sizes == [(100, 40)]

            response = client.get("/api/v1/sessions")
            assert response.status_code == 200
            assert response.json()[0]["id"] == session_id

            ws.send_json({"type": "terminate", "sessionId": session_id})
            assert ws.receive_json() == {"type": "terminated", "sessionId": session_id}
            assert ws.receive_json()["sessions"][0]["status"] == "terminated"
            assert not bridge.socket_exists(session_id)

            ws.send_json({"type": "reactivate", "sessionId": session_id})
            assert ws.receive_json() == {"type": "reactivated", "sessionId": session_id}
            assert ws.receive_json()["sessions"][0]["status"] == "detached"

            ws.send_json({"type": "rename", "sessionId": session_id, "name": "beta"})
            assert ws.receive_json()["sessions"][0]["name"] == "beta"

            ws.send_json({"type": "delete", "sessionId": session_id})
            assert ws.receive_json() == {"type": "sessions", "sessions": []}

            ws.send_json({"type": "attach", "sessionId": session_id})
            assert ws.receive_json() == {"type": "error", "message": "Session not found"}

    def test_malformed_frames_keep_connection_open(self, client):
        with client.websocket_connect("/") as ws:
            ws.receive_json()

            ws.send_text("definitely not json")
            ws.send_text(json.dumps({"type": "attach"}))
            ws.send_json({"type": "unknown"})

            _sync(ws)

    def test_oversized_resize_and_lone_surrogate_keep_connection_open(self, client, bridge):
        with client.websocket_connect("/") as ws:
            ws.receive_json()
            ws.send_json({"type": "create"})
            session_id = ws.receive_json()["sessionId"]
            ws.receive_json()
            ws.send_json({"type": "attach", "sessionId": session_id})
            ws.receive_json()
            ws.receive_json()

            ws.send_json({"type": "resize", "cols": 70000, "rows": 30})
            ws.send_text('{"type": "input", "data": "\\ud800"}')
            _sync(ws)

            assert bridge.handles[session_id].sizes == []
            assert bridge.handles[session_id].written == ["\ud800"]

    def test_broadcast_to_all_clients(self, client):
        with client.websocket_connect("/") as first, client.websocket_connect("/") as second:
            first.receive_json()
            second.receive_json()

            first.send_json({"type": "create"})
            assert first.receive_json()["type"] == "created"
            assert first.receive_json()["type"] == "sessions"

            listing = second.receive_json()
            assert listing["type"] == "sessions"
            assert listing["sessions"][0]["name"] == "Session 1"

    def test_disconnect_keeps_session_running(self, client):
        with client.websocket_connect("/") as ws:
            ws.receive_json()
            ws.send_json({"type": "create"})
            session_id = ws.receive_json()["sessionId"]
            ws.receive_json()
            ws.send_json({"type": "attach", "sessionId": session_id})
            ws.receive_json()
            ws.receive_json()

        with client.websocket_connect("/") as ws:
            sessions = ws.receive_json()["sessions"]
            assert sessions[0]["status"] == "running"

    def test_service_endpoints(self, client):
        root = client.get("/").json()
        assert root["service"] == "Persistent Terminal Service"
        assert root["endpoints"]["websocket"] == "/"

        health = client.get("/api/v1/health").json()
        assert health["status"] == "healthy"
        assert health["sessions"] == 0

        metrics = client.get("/metrics/")
        assert metrics.status_code == 200
        assert "pwt_websocket_active_connections" in metrics.text


@pytest.mark.integration
class TestPinAuthentication:
    """PIN gate over a real WebSocket."""

    @pytest.fixture
    def client(self, config, bridge):
        config.ensure_directories()
        config.config_file.write_text(json.dumps({"pinHash": hash_pin("2468"), "pinLength": 4}))
        with TestClient(create_app(config, bridge=bridge)) as test_client:
            yield test_client

    def test_auth_flow(self, client):
        with client.websocket_connect("/") as ws:
            assert ws.receive_json() == {"type": "auth_required", "pinLength": 4}

            ws.send_json({"type": "create"})
            assert ws.receive_json() == {"type": "error", "message": "Not authenticated"}

            ws.send_json({"type": "auth", "pin": "0000"})
            assert ws.receive_json() == {"type": "auth_failed"}

            ws.send_json({"type": "auth", "pin": "2468"})
            assert ws.receive_json() == {"type": "auth_success"}
            assert ws.receive_json() == {"type": "sessions", "sessions": []}

    def test_rest_listing_refused(self, client):
        assert client.get("/api/v1/sessions").status_code == 403


@pytest.mark.integration
class TestRestart:
    """Sessions outlive the application."""

    def _create_session(self, config, bridge) -> str:
        with TestClient(create_app(config, bridge=bridge)) as client:
            with client.websocket_connect("/") as ws:
                ws.receive_json()
                ws.send_json({"type": "create", "name": "survivor"})
                session_id = ws.receive_json()["sessionId"]
                ws.receive_json()
                ws.send_json({"type": "attach", "sessionId": session_id})
                ws.receive_json()
                ws.receive_json()
        return session_id

    def test_live_holder_restores_detached(self, config, bridge, make_bridge):
        session_id = self._create_session(config, bridge)
        assert bridge.socket_exists(session_id)

        with TestClient(create_app(config, bridge=make_bridge())) as client:
            sessions = client.get("/api/v1/sessions").json()

        assert sessions == [
            {"id": session_id, "name": "survivor", "status": "detached", "createdAt": sessions[0]["createdAt"]}
        ]

    def test_vanished_holder_restores_terminated(self, config, bridge, make_bridge):
        session_id = self._create_session(config, bridge)
        bridge.drop_socket(session_id)

        with TestClient(create_app(config, bridge=make_bridge())) as client:
            sessions = client.get("/api/v1/sessions").json()

        assert sessions[0]["status"] == "terminated"
