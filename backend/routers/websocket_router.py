# routers/websocket_router.py — Live task board over WebSocket
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Set

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect, Query

from auth import AuthService, account_state_error
from database import async_session_maker
from errors import ErrorEvent, TaskWiseError, ValidationFailure
from routers.tasks import task_out
from task_board import TaskBoard, session_store_factory

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("taskwise.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """Tracks open sockets per user"""

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = {}  # user_id -> sockets

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self._connections.setdefault(user_id, set()).add(websocket)
        logger.info(f"WS connected: user={user_id[:8]}")

    def disconnect(self, websocket: WebSocket, user_id: str):
        sockets = self._connections.get(user_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self._connections[user_id]
        logger.info(f"WS disconnected: user={user_id[:8]}")

    def get_online_users(self) -> list:
        return list(self._connections.keys())

    def get_stats(self) -> dict:
        return {
            "total_connections": sum(len(s) for s in self._connections.values()),
            "users": len(self._connections),
        }


# Global connection manager
manager = ConnectionManager()


def _snapshot_message(board: TaskBoard) -> dict:
    return {
        "type": "tasks.snapshot",
        "pending": board.pending,
        "tasks": [task_out(t).model_dump() for t in board.tasks],
        "timestamp": _now(),
    }


def _parse(raw: str) -> dict:
    """Client frames must be JSON objects"""
    try:
        data = json.loads(raw)
    except ValueError:
        raise ValidationFailure("Message is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationFailure("Message must be a JSON object")
    return data


async def _handle(board: TaskBoard, data: dict):
    """Run one client command; returns the operation or None for a no-op."""
    msg_type = data.get("type", "")
    if msg_type == "task.move":
        return await board.reorder(data.get("task_id", ""), data.get("status"), data.get("index"))
    if msg_type == "task.reopen":
        return await board.reopen(data.get("task_id", ""))
    raise ValidationFailure(f"Unknown message type: {msg_type}")


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Subscribe to the caller's task board and send drag-and-drop commands"""
    try:
        async with async_session_maker() as db:
            user = await AuthService.resolve_token(token, db)
    except HTTPException:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    state_error = account_state_error(user)
    if state_error is not None:
        await websocket.close(code=4003, reason=state_error.detail)
        return

    feed = websocket.app.state.task_feed
    error_channel = websocket.app.state.error_channel
    board = TaskBoard(
        user.as_actor(),
        session_store_factory(feed),
        errors=error_channel,
        feed=feed,
    )

    await manager.connect(websocket, user.id)
    await websocket.send_json({
        "type": "connected",
        "user_id": user.id,
        "role": user.role,
        "department": user.department,
        "online_users": manager.get_online_users(),
        "timestamp": _now(),
    })

    async def _push_snapshot(b: TaskBoard):
        await websocket.send_json(_snapshot_message(b))

    async def _push_error(event: ErrorEvent):
        if event.actor_id == user.id:
            await websocket.send_json({"type": "error", "error": event.to_dict()})

    stop_errors = error_channel.subscribe(_push_error)
    try:
        await board.subscribe(_push_snapshot)
        while True:
            raw = await websocket.receive_text()
            try:
                data = _parse(raw)
                if data.get("type") == "ping":
                    await websocket.send_json({"type": "pong", "timestamp": _now()})
                    continue
                operation = await _handle(board, data)
            except TaskWiseError as exc:
                # Rejected before any write; only this socket needs to know
                await websocket.send_json({"type": "error", "error": ErrorEvent.from_exception(exc, actor_id=user.id).to_dict()})
                continue
            await websocket.send_json({
                "type": "operation",
                "request_id": data.get("request_id"),
                "changed": operation is not None,
                "operation": operation.to_dict() if operation else None,
            })
    except WebSocketDisconnect:
        pass
    except TaskWiseError as e:
        logger.error(f"WebSocket board failed for {user.id}: {e}")
        await websocket.close(code=1011, reason=e.message)
    finally:
        stop_errors()
        await board.unsubscribe()
        manager.disconnect(websocket, user.id)


@router.get("/ws/stats")
async def websocket_stats():
    """WebSocket connection statistics"""
    return manager.get_stats()
