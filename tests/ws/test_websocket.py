"""WebSocket endpoint tests: auth, protocol and typing relay."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sfam.auth.jwt import create_access_token
from sfam.dm.service import ensure_thread
from sfam.ws import router as ws_router
from sfam.ws.manager import ConnectionManager


@pytest.fixture
def ws_token() -> str:
    return create_access_token(1, "alice@example.com")


@pytest.fixture
def test_client() -> TestClient:
    from sfam.main import create_app

    return TestClient(create_app())


class TestWebSocketAuth:
    def test_invalid_token_closes_4001(self, test_client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect("/ws?token=invalid.jwt.token") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001

    def test_refresh_token_rejected(self, test_client: TestClient) -> None:
        from sfam.auth.jwt import create_refresh_token

        token = create_refresh_token(1, "alice@example.com", token_id="abc")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with test_client.websocket_connect(f"/ws?token={token}") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4001


class TestWebSocketProtocol:
    def test_ping_pong(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_subscribe_and_unsubscribe(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "subscribe", "channel": "dm"})
            assert ws.receive_json() == {"type": "subscribed", "channel": "dm"}
            ws.send_json({"action": "unsubscribe", "channel": "dm"})
            assert ws.receive_json() == {"type": "unsubscribed", "channel": "dm"}

    def test_subscribe_invalid_channel(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "subscribe", "channel": "games"})
            data = ws.receive_json()
            assert data["type"] == "error"
            assert "Invalid channel" in data["message"]

    def test_invalid_json(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_text("not valid json {{{")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}

    def test_non_object_message(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_text("[1, 2]")
            assert ws.receive_json()["type"] == "error"

    def test_unknown_action(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "explode"})
            data = ws.receive_json()
            assert data["type"] == "error"
            assert "Unknown action" in data["message"]

    def test_typing_without_thread_id(self, test_client: TestClient, ws_token: str) -> None:
        with test_client.websocket_connect(f"/ws?token={ws_token}") as ws:
            ws.send_json({"action": "typing", "thread_id": "12"})
            assert ws.receive_json() == {"type": "error", "message": "Cannot type in this conversation"}


class TestTypingRelay:
    @pytest.fixture
    def local_manager(self, monkeypatch) -> ConnectionManager:
        mgr = ConnectionManager()
        monkeypatch.setattr(ws_router, "manager", mgr)
        return mgr

    @pytest.mark.asyncio
    async def test_local_fallback_reaches_peer(self, db_session, member, other_member, local_manager) -> None:
        result = await ensure_thread(db_session, member.id, other_member.id)
        await db_session.commit()

        peer_ws = AsyncMock()
        await local_manager.connect(peer_ws, "peer", other_member.id)
        await local_manager.subscribe("peer", "dm")

        assert await ws_router.relay_typing(member.id, result.thread.id, True) is True
        sent = json.loads(peer_ws.send_text.await_args.args[0])
        assert sent == {
            "channel": "dm",
            "data": {
                "type": "dm_typing",
                "payload": {
                    "thread_id": result.thread.id,
                    "channel": f"dm:thread:{result.thread.id}",
                    "user_id": member.id,
                    "is_typing": True,
                },
            },
        }

    @pytest.mark.asyncio
    async def test_published_through_redis(self, db_session, member, other_member, fake_redis, monkeypatch) -> None:
        result = await ensure_thread(db_session, member.id, other_member.id)
        await db_session.commit()
        monkeypatch.setattr(ws_router, "get_redis", lambda: fake_redis)

        assert await ws_router.relay_typing(member.id, result.thread.id, False) is True
        (event,) = fake_redis.events_for(other_member.id)
        assert event["event"] == "dm_typing"
        assert event["data"]["is_typing"] is False
        assert fake_redis.events_for(member.id) == []

    @pytest.mark.asyncio
    async def test_outsider_cannot_type(self, db_session, member, other_member, make_user, local_manager) -> None:
        result = await ensure_thread(db_session, member.id, other_member.id)
        await db_session.commit()
        carol = await make_user("carol@example.com", "carol")

        assert await ws_router.relay_typing(carol.id, result.thread.id, True) is False
