# tests/test_websocket.py — WebSocket board, health, and security tests
import asyncio

import pytest
from httpx import AsyncClient
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from auth import AuthService
from main import app
from models import TaskStatus
from tests.conftest import get_auth_headers, make_task


def _token(user) -> str:
    return AuthService.create_access_token(AuthService.token_payload(user))


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    """Health endpoint returns OK"""
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["version"] == "1.0.0"
    assert "feed_subscribers" in data["realtime"]


@pytest.mark.asyncio
async def test_security_headers(client: AsyncClient):
    """Responses include security headers"""
    resp = await client.get("/health")
    assert resp.headers.get("X-Content-Type-Options") == "nosniff"
    assert resp.headers.get("X-Frame-Options") == "DENY"
    assert "x-request-id" in {k.lower() for k in resp.headers.keys()}
    assert "x-response-time" in {k.lower() for k in resp.headers.keys()}


@pytest.mark.asyncio
async def test_request_id_echoed_in_errors(client: AsyncClient, test_user):
    resp = await client.get(
        "/api/v1/tasks/missing",
        headers={**get_auth_headers(test_user), "X-Request-ID": "req-123"},
    )
    assert resp.status_code == 404
    assert resp.json()["request_id"] == "req-123"
    assert resp.headers["X-Request-ID"] == "req-123"


def test_websocket_rejects_bad_token():
    with pytest.raises(WebSocketDisconnect) as exc:
        with TestClient(app).websocket_connect("/ws?token=not-a-token"):
            pass
    assert exc.value.code == 4001


@pytest.mark.asyncio
async def test_websocket_rejects_pending_account(db_engine, pending_user):
    def _connect():
        with pytest.raises(WebSocketDisconnect) as exc:
            with TestClient(app).websocket_connect(f"/ws?token={_token(pending_user)}"):
                pass
        return exc.value.code

    assert await asyncio.to_thread(_connect) == 4003


@pytest.mark.asyncio
async def test_websocket_board_session(db_session, test_user):
    task = await make_task(db_session, test_user, "Live")
    await make_task(db_session, test_user, "Other", order=1)

    def _session():
        received = []
        with TestClient(app).websocket_connect(f"/ws?token={_token(test_user)}") as ws:
            received.append(ws.receive_json())
            received.append(ws.receive_json())

            ws.send_json({"type": "ping"})
            received.append(ws.receive_json())

            ws.send_json({
                "type": "task.move", "request_id": "r1",
                "task_id": task.id, "status": TaskStatus.TO_BE_REVIEWED.value, "index": 0,
            })
            while True:
                message = ws.receive_json()
                received.append(message)
                if message["type"] == "operation":
                    break

            ws.send_json({"type": "task.move", "task_id": task.id, "status": TaskStatus.DONE.value, "index": 0})
            received.append(ws.receive_json())
        return received

    messages = await asyncio.to_thread(_session)
    types = [m["type"] for m in messages]

    assert types[:3] == ["connected", "tasks.snapshot", "pong"]
    assert [t["name"] for t in messages[1]["tasks"]] == ["Live", "Other"]

    operation = messages[-2]
    assert operation["request_id"] == "r1"
    assert operation["changed"] is True
    assert operation["operation"]["state"] == "confirmed"

    snapshots = [m for m in messages[3:-2] if m["type"] == "tasks.snapshot"]
    assert snapshots[0]["pending"] is True
    assert snapshots[-1]["pending"] is False
    moved = next(t for t in snapshots[-1]["tasks"] if t["id"] == task.id)
    assert moved["status"] == TaskStatus.TO_BE_REVIEWED.value

    rejected = messages[-1]
    assert rejected["type"] == "error"
    assert rejected["error"]["code"] == "TW-TASK-003"


@pytest.mark.asyncio
async def test_websocket_malformed_frames_get_error_replies(db_session, test_user):
    await make_task(db_session, test_user, "Live")

    def _session():
        replies = []
        with TestClient(app).websocket_connect(f"/ws?token={_token(test_user)}") as ws:
            ws.receive_json()
            ws.receive_json()
            ws.send_text("{not json")
            replies.append(ws.receive_json())
            ws.send_json([])
            replies.append(ws.receive_json())
            ws.send_json({"type": "ping"})
            replies.append(ws.receive_json())
        return replies

    replies = await asyncio.to_thread(_session)

    assert [r["type"] for r in replies] == ["error", "error", "pong"]
    assert replies[0]["error"]["code"] == "TW-TASK-001"
    assert "JSON object" in replies[1]["error"]["message"]
