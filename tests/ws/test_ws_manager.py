"""Unit tests for the WebSocket ConnectionManager."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sfam.ws.manager import ConnectionManager, channel_for_event


@pytest.fixture
def mgr() -> ConnectionManager:
    return ConnectionManager(max_connections_per_user=2)


def _make_ws(*, fail_send: bool = False) -> MagicMock:
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.close = AsyncMock()
    if fail_send:
        ws.send_text = AsyncMock(side_effect=RuntimeError("connection closed"))
    else:
        ws.send_text = AsyncMock()
    return ws


def _sent(ws: MagicMock) -> list[dict]:
    return [json.loads(call.args[0]) for call in ws.send_text.await_args_list]


class TestChannelForEvent:
    @pytest.mark.parametrize(
        ("event", "channel"),
        [
            ("notification", "notifications"),
            ("notification_read", "notifications"),
            ("dm_message", "dm"),
            ("dm_typing", "dm"),
            ("wallet_updated", "wallet"),
            ("payment_verified", "wallet"),
            ("presence", None),
        ],
    )
    def test_routing(self, event: str, channel: str | None) -> None:
        assert channel_for_event(event) == channel


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_registers_client(self, mgr: ConnectionManager) -> None:
        ws = _make_ws()
        assert await mgr.connect(ws, "conn-1", user_id=42) is True
        ws.accept.assert_awaited_once()
        stats = mgr.get_stats()
        assert stats["total_connections"] == 1
        assert stats["unique_users"] == 1

    @pytest.mark.asyncio
    async def test_connection_limit(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        await mgr.connect(_make_ws(), "conn-2", user_id=42)
        third = _make_ws()
        assert await mgr.connect(third, "conn-3", user_id=42) is False
        third.close.assert_awaited_once()
        assert third.close.await_args.kwargs["code"] == 4008
        assert mgr.user_connection_count(42) == 2

        # Other members are unaffected
        assert await mgr.connect(_make_ws(), "conn-4", user_id=7) is True

    @pytest.mark.asyncio
    async def test_default_limit_from_settings(self) -> None:
        assert ConnectionManager().max_connections_per_user == 5


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_cleans_up(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        await mgr.subscribe("conn-1", "dm")
        await mgr.disconnect("conn-1")
        stats = mgr.get_stats()
        assert stats == {"total_connections": 0, "unique_users": 0, "channels": {}}

    @pytest.mark.asyncio
    async def test_disconnect_nonexistent(self, mgr: ConnectionManager) -> None:
        await mgr.disconnect("nonexistent")
        assert mgr.connection_count == 0


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_valid_channel(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        assert await mgr.subscribe("conn-1", "wallet") is True
        assert mgr.get_stats()["channels"] == {"wallet": 1}

    @pytest.mark.asyncio
    async def test_invalid_channel(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        assert await mgr.subscribe("conn-1", "games") is False

    @pytest.mark.asyncio
    async def test_unknown_connection(self, mgr: ConnectionManager) -> None:
        assert await mgr.subscribe("ghost", "dm") is False
        assert await mgr.unsubscribe("ghost", "dm") is False


class TestDelivery:
    @pytest.mark.asyncio
    async def test_send_to_user_respects_subscriptions(self, mgr: ConnectionManager) -> None:
        subscribed, other = _make_ws(), _make_ws()
        await mgr.connect(subscribed, "conn-1", user_id=42)
        await mgr.connect(other, "conn-2", user_id=42)
        await mgr.subscribe("conn-1", "dm")

        sent = await mgr.send_to_user(42, "dm", {"hello": "world"})
        assert sent == 1
        assert _sent(subscribed) == [{"channel": "dm", "data": {"hello": "world"}}]
        other.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_is_per_user(self, mgr: ConnectionManager) -> None:
        alice, bob = _make_ws(), _make_ws()
        await mgr.connect(alice, "conn-1", user_id=1)
        await mgr.connect(bob, "conn-2", user_id=2)
        await mgr.subscribe("conn-1", "wallet")
        await mgr.subscribe("conn-2", "wallet")

        assert await mgr.send_to_user(1, "wallet", {"balance": 10}) == 1
        bob.send_text.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_deliver_event_routes_to_channel(self, mgr: ConnectionManager) -> None:
        ws = _make_ws()
        await mgr.connect(ws, "conn-1", user_id=42)
        await mgr.subscribe("conn-1", "notifications")

        assert await mgr.deliver_event(42, "notification", {"id": 1}) == 1
        assert _sent(ws) == [
            {"channel": "notifications", "data": {"type": "notification", "payload": {"id": 1}}}
        ]
        # Not subscribed to dm
        assert await mgr.deliver_event(42, "dm_message", {"id": 2}) == 0

    @pytest.mark.asyncio
    async def test_deliver_event_without_channel_goes_direct(self, mgr: ConnectionManager) -> None:
        ws = _make_ws()
        await mgr.connect(ws, "conn-1", user_id=42)
        assert await mgr.deliver_event(42, "session_revoked", {}) == 1
        assert _sent(ws) == [{"type": "session_revoked", "payload": {}}]

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(fail_send=True), "conn-1", user_id=42)
        assert await mgr.send_to_user_direct(42, {"type": "x"}) == 0
        assert mgr.connection_count == 0

    @pytest.mark.asyncio
    async def test_messages_sent_counter(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42)
        await mgr.send_to_user_direct(42, {"type": "a"})
        await mgr.send_to_user_direct(42, {"type": "b"})
        assert mgr._connections["conn-1"].messages_sent == 2
