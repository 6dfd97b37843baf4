"""WebSocket endpoint with JWT authentication and channel multiplexing."""

import json
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from sfam.auth.jwt import verify_token
from sfam.database import session_scope
from sfam.dm.service import typing_recipient
from sfam.dm.shared import thread_channel_name
from sfam.redis_client import get_redis, publish_to_user
from sfam.ws.manager import manager

logger = structlog.get_logger()

router = APIRouter()


async def relay_typing(user_id: int, thread_id: Any, is_typing: bool) -> bool:
    """Forward a typing indicator to the other participant of the thread."""
    if not isinstance(thread_id, int):
        return False
    async with session_scope() as db:
        recipient = await typing_recipient(db, user_id, thread_id)
    if recipient is None:
        return False

    data = {
        "thread_id": thread_id,
        "channel": thread_channel_name(thread_id),
        "user_id": user_id,
        "is_typing": is_typing,
    }
    try:
        redis = get_redis()
    except RuntimeError:
        # Single-process fallback when pub/sub is unavailable
        await manager.deliver_event(recipient, "dm_typing", data)
        return True
    return await publish_to_user(redis, recipient, "dm_typing", data)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
) -> None:
    """Single WebSocket endpoint with JWT authentication and channel multiplexing.

    Protocol:
        Client -> Server:
            {"action": "subscribe", "channel": "dm"}
            {"action": "unsubscribe", "channel": "dm"}
            {"action": "typing", "thread_id": 12, "is_typing": true}
            {"action": "ping"}

        Server -> Client:
            {"channel": "dm", "data": {"type": "dm_message", "payload": {...}}}
            {"type": "pong"}
            {"type": "error", "message": "..."}
            {"type": "subscribed", "channel": "dm"}
            {"type": "unsubscribed", "channel": "dm"}
    """
    try:
        payload = verify_token(token, expected_type="access")
        user_id = int(payload["sub"])
    except Exception as e:
        await websocket.close(code=4001, reason=f"Authentication failed: {e}")
        return

    conn_id = str(uuid.uuid4())
    if not await manager.connect(websocket, conn_id, user_id):
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "error", "message": "Invalid message"})
                continue

            action = msg.get("action")

            if action == "subscribe":
                channel = msg.get("channel", "")
                if await manager.subscribe(conn_id, channel):
                    await websocket.send_json({"type": "subscribed", "channel": channel})
                else:
                    await websocket.send_json({"type": "error", "message": f"Invalid channel: {channel}"})

            elif action == "unsubscribe":
                channel = msg.get("channel", "")
                await manager.unsubscribe(conn_id, channel)
                await websocket.send_json({"type": "unsubscribed", "channel": channel})

            elif action == "typing":
                ok = await relay_typing(user_id, msg.get("thread_id"), bool(msg.get("is_typing", True)))
                if not ok:
                    await websocket.send_json({"type": "error", "message": "Cannot type in this conversation"})

            elif action == "ping":
                await websocket.send_json({"type": "pong"})

            else:
                await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})

    except WebSocketDisconnect:
        await manager.disconnect(conn_id)
    except Exception:
        logger.exception("ws_error", conn_id=conn_id)
        await manager.disconnect(conn_id)
