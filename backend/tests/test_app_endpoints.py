import json
import logging

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect


def test_healthcheck_reports_build_meta(main, monkeypatch):
    monkeypatch.setenv("APP_VERSION", "1.2.3")
    monkeypatch.delenv("APP_COMMIT", raising=False)
    monkeypatch.delenv("COMMIT_SHA", raising=False)

    body = TestClient(main.app).get("/api/health").json()

    assert body["ok"] is True
    assert body["version"] == "1.2.3"
    assert body["commit"] == "unknown"


def test_request_log_line_is_json(main, memory, caplog):
    caplog.set_level(logging.INFO, logger="chatroom.api")
    token = main.issue_token("u_1", "a@x.io")

    TestClient(main.app).get("/api/v1/chat/c_missing", headers={"Authorization": f"Bearer {token}"})

    lines = [json.loads(r.getMessage()) for r in caplog.records if r.getMessage().startswith("{")]
    assert lines[-1]["path"] == "/api/v1/chat/c_missing"
    assert lines[-1]["status"] == 404
    assert lines[-1]["user_id"] == "u_1"


def test_schema_errors_use_fastapi_422(main, memory):
    res = TestClient(main.app).post("/api/v1/user", json={"name": "Alice"})

    assert res.status_code == 422


def test_websocket_join_and_send(main, memory):
    chat = memory.create_chat("u_a", ["u_a", "u_b"], False, None)
    client = TestClient(main.app)

    with client.websocket_connect("/ws") as ws:
        ws.send_text(json.dumps({"type": "joinChat", "chat_id": chat["id"]}))
        assert ws.receive_json() == {"type": "joinedChat", "data": chat["id"]}

        ws.send_text("{broken")
        assert ws.receive_json() == {"type": "error", "data": "Invalid payload"}

        ws.send_text(json.dumps({"type": "sendMessage", "chat_id": chat["id"], "sender_id": "u_a", "content": "hi"}))
        frame = ws.receive_json()
        assert frame["type"] == "newMessage"
        assert frame["data"]["content"] == "hi"

    assert main.relay.rooms.sessions(chat["id"]) == []


def test_websocket_requires_token_when_enabled(main, memory):
    main.AUTH_REQUIRED = {"ws"}
    client = TestClient(main.app)

    with pytest.raises(WebSocketDisconnect) as err:
        with client.websocket_connect("/ws"):
            pass
    assert err.value.code == 4401

    token = main.issue_token("u_1", "a@x.io")
    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.send_text(json.dumps({"type": "subscribeToUser", "user_id": "u_1"}))
        assert ws.receive_json() == {"type": "user subscribed", "data": "u_1"}


def test_websocket_binary_frames_are_parsed_like_text(main, memory):
    chat = memory.create_chat("u_a", ["u_a"], False, None)
    client = TestClient(main.app)

    with client.websocket_connect("/ws") as ws:
        ws.send_bytes(json.dumps({"type": "joinChat", "chat_id": chat["id"]}).encode())
        assert ws.receive_json() == {"type": "joinedChat", "data": chat["id"]}

        ws.send_bytes(b"not json")
        assert ws.receive_json() == {"type": "error", "data": "Invalid payload"}

        # session survives the bad frame
        ws.send_text(json.dumps({"type": "sendMessage", "chat_id": chat["id"], "sender_id": "u_a", "content": "still here"}))
        assert ws.receive_json()["data"]["content"] == "still here"
