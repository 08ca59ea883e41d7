"""
Tests for the HTTP, SSE and WebSocket surface.
"""

import json

import pytest
from fastapi.testclient import TestClient

from core import ChatEngine
from gateway.manager import GatewayManager
from inference.tokens import TokenUsage
from main import app
from fakes import ScriptedCompletion


@pytest.fixture
def client(tmp_path):
    with TestClient(app) as c:
        completion = ScriptedCompletion([(["Hi", "!"], TokenUsage(10, 2, 12))] * 3)
        app.state.engine = ChatEngine(
            gateway=GatewayManager(command=["gw"], config_dir=tmp_path),
            completion=completion,
        )
        yield c


class TestHttp:

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["gateway"] == "stopped"

    def test_tools_empty_when_gateway_stopped(self, client):
        assert client.get("/api/tools").json() == {"tools": [], "state": "stopped"}
        assert client.post("/api/tools/refresh").json()["tools"] == []

    def test_abort_unknown_request(self, client):
        data = client.post("/api/chat/nope/abort").json()
        assert data == {"request_id": "nope", "cancelled": 0}

    def test_sse_chat(self, client):
        resp = client.post("/api/chat", json={"request_id": "s1", "prompt": "hello"})
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")

        frames = [line[6:] for line in resp.text.splitlines() if line.startswith("data: ")]
        assert frames[-1] == "[DONE]"
        events = [json.loads(f) for f in frames[:-1]]
        types = [e["type"] for e in events]
        assert [e["chunk"] for e in events if e["type"] == "chunk"] == ["Hi", "!"]
        assert types[-2:] == ["response", "token_usage"]

    def test_sse_rejects_missing_prompt(self, client):
        assert client.post("/api/chat", json={"request_id": "s2"}).status_code == 422

    def test_sse_rejects_id_in_flight_elsewhere(self, client):
        """An id already running on another connection is refused without touching it."""
        registry = app.state.engine.registry
        registry.begin("busy")

        resp = client.post("/api/chat", json={"request_id": "busy", "prompt": "hello"})
        events = [json.loads(line[6:]) for line in resp.text.splitlines()
                  if line.startswith("data: ") and line != "data: [DONE]"]

        assert [e["type"] for e in events] == ["error"]
        assert "already in flight" in events[0]["message"]
        assert registry.is_active("busy")

    def test_abort_of_finished_id_does_not_affect_reuse(self, client):
        client.post("/api/chat", json={"request_id": "again", "prompt": "one"})
        assert client.post("/api/chat/again/abort").json()["cancelled"] == 0

        resp = client.post("/api/chat", json={"request_id": "again", "prompt": "two"})
        types = [json.loads(line[6:])["type"] for line in resp.text.splitlines()
                 if line.startswith("data: ") and line != "data: [DONE]"]
        assert types[-2:] == ["response", "token_usage"]


class TestWebSocket:

    def test_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("ping")
            assert ws.receive_text() == "pong"

    def test_chat_streams_events(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"type": "chat", "request_id": "w1", "prompt": "hello"}))
            events = []
            while True:
                event = ws.receive_json()
                events.append(event)
                if event["type"] in ("token_usage", "error", "aborted"):
                    break

        types = [e["type"] for e in events]
        assert "first_chunk" in types
        assert types[-2:] == ["response", "token_usage"]
        assert all(e["request_id"] == "w1" for e in events)

    def test_get_tools(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"type": "get_tools"}))
            assert ws.receive_json() == {"type": "tools", "tools": []}

    def test_bad_messages(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json()["message"] == "Invalid JSON"
            ws.send_text(json.dumps({"type": "dance"}))
            assert ws.receive_json()["message"].startswith("Unknown message type")
            ws.send_text(json.dumps({"type": "chat"}))
            assert ws.receive_json()["message"].startswith("Invalid chat request")

    def test_abort_message(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"type": "abort", "request_id": "zzz"}))
            assert ws.receive_json() == {"type": "abort_result", "request_id": "zzz", "cancelled": 0}

    def test_chat_rejected_when_id_in_flight_elsewhere(self, client):
        app.state.engine.registry.begin("shared")
        with client.websocket_connect("/ws") as ws:
            ws.send_text(json.dumps({"type": "chat", "request_id": "shared", "prompt": "hi"}))
            event = ws.receive_json()
        assert event["type"] == "error"
        assert event["message"] == "Request id already in flight"

    def test_disallowed_origin(self, client):
        from starlette.websockets import WebSocketDisconnect
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws", headers={"origin": "https://evil.example.com"}) as ws:
                ws.receive_text()
