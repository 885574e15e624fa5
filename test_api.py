"""
In-process API tests: the FastAPI app runs with an in-memory database and a
scripted model backend inside Starlette's TestClient.
"""
import re
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import threadforge.config as config_mod
import threadforge.main as main_mod
from threadforge.errors import ModelFailure
from threadforge.events import EventType
from threadforge.inference.base import ModelIncrement
from threadforge.inference.scripted import Pause, ScriptedBackend
from threadforge.transports.sse import parse_frames
from threadforge.transports.websocket import BUSY_MESSAGE

REPLY = [ModelIncrement.token("Hello "), ModelIncrement.token("there"), ModelIncrement.done()]


def _app(*scripts, **options):
    backend = ScriptedBackend(*scripts)
    return main_mod.create_app(
        db_path=":memory:",
        backend_factory=lambda provider: backend,
        start_sweeper=False,
        **options,
    )


def _create_agent(client: TestClient, **overrides) -> dict:
    body = {"provider": "openai", "model_name": "gpt-5.2", **overrides}
    resp = client.post("/api/agents", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _wait_idle(client: TestClient, thread_id: str, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not client.get(f"/api/threads/{thread_id}/processing").json()["processing"]:
            return
        time.sleep(0.05)
    raise AssertionError(f"thread {thread_id} still processing after {timeout}s")


def _ws_until_terminal(ws) -> list[dict]:
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in ("done", "error"):
            return frames


# ─────────────────────────────────────────────
# Agents
# ─────────────────────────────────────────────

def test_health():
    with TestClient(_app(REPLY)) as client:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


def test_create_list_and_delete_agent():
    with TestClient(_app(REPLY)) as client:
        created = _create_agent(client, display_name="Designer")
        agent, thread = created["agent"], created["thread"]
        assert re.fullmatch(r"openai-gpt-5\.2-[0-9a-f]{8}", agent["name"])
        assert agent["display_name"] == "Designer"
        assert agent["thread_id"] == thread["id"]
        assert agent["is_sub_agent"] is False
        assert thread["title"] == "New Chat"
        assert client.get(f"/api/threads/{thread['id']}/messages").json() == []

        listed = client.get("/api/agents").json()
        assert [a["id"] for a in listed] == [agent["id"]]
        assert client.get(f"/api/threads/{thread['id']}/team").json() == []

        resp = client.delete(f"/api/agents/{agent['id']}")
        assert resp.status_code == 200
        assert resp.json()["deleted"]["agents"] == 1
        assert client.get("/api/agents").json() == []
        assert client.delete(f"/api/agents/{agent['id']}").status_code == 404


def test_create_agent_validation_errors():
    with TestClient(_app(REPLY)) as client:
        resp = client.post("/api/agents", json={"provider": "nope", "model_name": "x"})
        assert resp.status_code == 400
        assert resp.json()["detail"]["code"] == "validation_error"
        # Missing required field: rejected by the request model
        assert client.post("/api/agents", json={"provider": "openai"}).status_code == 422


# ─────────────────────────────────────────────
# Chat over HTTP
# ─────────────────────────────────────────────

def test_sync_chat_returns_final_reply():
    with TestClient(_app(REPLY)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        resp = client.post(f"/api/threads/{thread_id}/chat", json={"content": "hello"})
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["status"] == "completed"
        assert body["message"]["content"] == "Hello there"

        msgs = client.get(f"/api/threads/{thread_id}/messages").json()
        assert [(m["role"], m["content"]) for m in msgs] == [("user", "hello"), ("assistant", "Hello there")]
        assert msgs[0]["seq"] < msgs[1]["seq"]


def test_sync_chat_failure_maps_to_http_error():
    with TestClient(_app([ModelFailure("bad request")])) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        resp = client.post(f"/api/threads/{thread_id}/chat", json={"content": "hello"})
        assert resp.status_code == 502
        assert resp.json()["detail"]["code"] == "model_failure"
        msgs = client.get(f"/api/threads/{thread_id}/messages").json()
        assert [m["role"] for m in msgs] == ["user"]


def test_chat_admission_errors():
    with TestClient(_app(REPLY)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        resp = client.post(f"/api/threads/{thread_id}/chat", json={"content": "  "})
        assert resp.status_code == 400
        assert "must not be empty" in resp.json()["detail"]["message"]

        assert client.post("/api/threads/missing/chat", json={"content": "hi"}).status_code == 404
        assert client.post("/api/threads/missing/chat-stream", json={"content": "hi"}).status_code == 404
        assert client.get("/api/threads/missing/messages").status_code == 404
        assert client.get(f"/api/threads/{thread_id}/messages").json() == []


def test_chat_stream_delivers_events_until_done():
    script = [ModelIncrement.progress("Looking at it"), ModelIncrement.token("Hel"),
              ModelIncrement.token("lo"), ModelIncrement.done()]
    with TestClient(_app(script)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        with client.stream("POST", f"/api/threads/{thread_id}/chat-stream", json={"content": "hi"}) as resp:
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith("text/event-stream")
            body = "".join(resp.iter_text())

        events = parse_frames(body)
        assert [e.type for e in events] == [EventType.PROGRESS, EventType.TOKEN, EventType.TOKEN, EventType.DONE]
        assert events[-1].content == "Hello"

        _wait_idle(client, thread_id)
        msgs = client.get(f"/api/threads/{thread_id}/messages").json()
        assert [(m["role"], m["tool_name"]) for m in msgs] == [("user", None), ("tool", "progress"), ("assistant", None)]


def test_chat_stream_failure_ends_with_error_event():
    with TestClient(_app([ModelFailure("bad request")])) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        with client.stream("POST", f"/api/threads/{thread_id}/chat-stream", json={"content": "hi"}) as resp:
            assert resp.status_code == 200
            events = parse_frames("".join(resp.iter_text()))
        assert events[-1].type is EventType.ERROR
        assert events[-1].content


def test_cancel_endpoint_on_idle_thread():
    with TestClient(_app(REPLY)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        resp = client.post(f"/api/threads/{thread_id}/cancel")
        assert resp.status_code == 200
        assert resp.json() == {"ok": False}


# ─────────────────────────────────────────────
# WebSocket
# ─────────────────────────────────────────────

def test_websocket_turn_and_busy_rejection():
    script = [ModelIncrement.token("a"), Pause(seconds=1.0), ModelIncrement.token("b"), ModelIncrement.done()]
    with TestClient(_app(script)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        with client.websocket_connect(f"/ws/agent-chat?threadId={thread_id}") as ws:
            ws.send_json({"type": "message", "content": "first"})
            assert ws.receive_json() == {"type": "token", "content": "a"}

            # The turn is mid-flight: every surface rejects a second message
            assert client.get(f"/api/threads/{thread_id}/processing").json()["processing"] is True
            resp = client.post(f"/api/threads/{thread_id}/chat", json={"content": "second"})
            assert resp.status_code == 409
            assert resp.json()["detail"]["code"] == "busy"
            assert client.post(f"/api/threads/{thread_id}/chat-stream",
                               json={"content": "second"}).status_code == 409
            ws.send_json({"type": "message", "content": "second"})
            assert ws.receive_json() == {"type": "error", "content": BUSY_MESSAGE}

            frames = _ws_until_terminal(ws)
            assert frames[-1] == {"type": "done", "content": "ab"}

        msgs = client.get(f"/api/threads/{thread_id}/messages").json()
        assert [(m["role"], m["content"]) for m in msgs] == [("user", "first"), ("assistant", "ab")]


def test_websocket_reports_bad_client_messages():
    with TestClient(_app(REPLY)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        with client.websocket_connect(f"/ws/agent-chat?threadId={thread_id}") as ws:
            ws.send_json({"type": "message", "content": ""})
            assert ws.receive_json() == {"type": "error", "content": "message content must not be empty"}
            ws.send_text("not json at all")
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "shout"})
            assert "unknown message type" in ws.receive_json()["content"]
            ws.send_json({"type": "message", "content": 123})
            assert ws.receive_json() == {"type": "error", "content": "must be a string"}
            ws.send_json({"type": "message", "content": ["hi"]})
            assert ws.receive_json()["type"] == "error"

            # The socket is still usable afterwards
            ws.send_json({"type": "message", "content": "hello"})
            assert _ws_until_terminal(ws)[-1] == {"type": "done", "content": "Hello there"}


def test_websocket_cancel_keeps_partial_text():
    script = [ModelIncrement.token("Hel"), Pause(seconds=5), ModelIncrement.token("lo"), ModelIncrement.done()]
    with TestClient(_app(script)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        with client.websocket_connect(f"/ws/agent-chat?threadId={thread_id}") as ws:
            ws.send_json({"type": "message", "content": "greet"})
            assert ws.receive_json() == {"type": "token", "content": "Hel"}
            ws.send_json({"type": "cancel"})
            assert _ws_until_terminal(ws)[-1] == {"type": "done", "content": "Hel"}

        _wait_idle(client, thread_id)
        msgs = client.get(f"/api/threads/{thread_id}/messages").json()
        assert [(m["role"], m["content"], m["state"]) for m in msgs] == [
            ("user", "greet", "complete"),
            ("assistant", "Hel", "partial"),
        ]


def test_websocket_disconnect_does_not_cancel_turn():
    script = [ModelIncrement.token("a"), Pause(seconds=0.2), ModelIncrement.token("b"), ModelIncrement.done()]
    with TestClient(_app(script)) as client:
        thread_id = _create_agent(client)["thread"]["id"]
        with client.websocket_connect(f"/ws/agent-chat?threadId={thread_id}") as ws:
            ws.send_json({"type": "message", "content": "go"})
            assert ws.receive_json()["type"] == "token"

        _wait_idle(client, thread_id)
        msgs = client.get(f"/api/threads/{thread_id}/messages").json()
        assert [(m["role"], m["content"], m["state"]) for m in msgs][-1] == ("assistant", "ab", "complete")


def test_websocket_unknown_thread_is_closed():
    with TestClient(_app(REPLY)) as client:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/agent-chat?threadId=missing") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4404


# ─────────────────────────────────────────────
# Owner scoping
# ─────────────────────────────────────────────

def test_bearer_tokens_scope_agents_by_owner(monkeypatch):
    monkeypatch.setattr(main_mod, "API_TOKENS", {"tok-alice": "alice", "tok-bob": "bob"})
    alice = {"Authorization": "Bearer tok-alice"}
    bob = {"Authorization": "Bearer tok-bob"}
    with TestClient(_app(REPLY)) as client:
        assert client.get("/api/agents").status_code == 401
        assert client.get("/api/agents", headers={"Authorization": "Bearer wrong"}).status_code == 401

        resp = client.post("/api/agents", json={"provider": "openai", "model_name": "gpt-5.2"}, headers=alice)
        assert resp.status_code == 201
        agent, thread = resp.json()["agent"], resp.json()["thread"]

        assert len(client.get("/api/agents", headers=alice).json()) == 1
        assert client.get("/api/agents", headers=bob).json() == []
        assert client.get(f"/api/threads/{thread['id']}/messages", headers=bob).status_code == 404
        assert client.post(f"/api/threads/{thread['id']}/chat", json={"content": "hi"},
                           headers=bob).status_code == 404
        assert client.delete(f"/api/agents/{agent['id']}", headers=bob).status_code == 404

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws/agent-chat?threadId={thread['id']}&token=wrong") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401

        with client.websocket_connect(f"/ws/agent-chat?threadId={thread['id']}&token=tok-alice") as ws:
            ws.send_json({"type": "message", "content": "hi"})
            assert _ws_until_terminal(ws)[-1]["type"] == "done"


def test_mcp_endpoints_require_a_token_when_tokens_are_configured(monkeypatch):
    monkeypatch.setattr(main_mod, "API_TOKENS", {"tok-alice": "alice"})
    with TestClient(_app(REPLY)) as client:
        assert client.get("/mcp/sse").status_code == 401
        assert client.get("/mcp/sse?token=wrong").status_code == 401
        resp = client.post("/mcp/messages/?session_id=0123", json={"jsonrpc": "2.0", "method": "ping", "id": 1})
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "unauthorized"


# ─────────────────────────────────────────────
# Settings
# ─────────────────────────────────────────────

def test_settings_are_read_and_persisted(monkeypatch, tmp_path):
    config_file = tmp_path / "config.json"
    monkeypatch.setattr(config_mod, "_config_file", config_file)
    with TestClient(_app(REPLY)) as client:
        current = client.get("/api/config").json()
        assert "TURN_IDLE_TIMEOUT" in current

        resp = client.put("/api/config", json={"MEMORY_WINDOW_SIZE": 12, "MODEL_MAX_RETRIES": 1})
        assert resp.status_code == 200
        assert resp.json()["restart_required"] is True
        assert resp.json()["saved"] == {"MEMORY_WINDOW_SIZE": 12, "MODEL_MAX_RETRIES": 1}
        assert client.put("/api/config", json={"PORT": 0}).status_code == 422

    assert '"MEMORY_WINDOW_SIZE": 12' in config_file.read_text(encoding="utf-8")
