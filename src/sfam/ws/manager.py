"""WebSocket connection manager.

Tracks open connections per member and their channel subscriptions.
Every realtime event is personal, so fan-out is always to one member's
connections, filtered by the channel the event belongs to.
"""

import json
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

import structlog
from fastapi import WebSocket

from sfam.config import get_settings

logger = structlog.get_logger()

VALID_CHANNELS = {"notifications", "dm", "wallet"}

# Event name prefix -> channel a client must subscribe to
EVENT_CHANNELS: dict[str, str] = {
    "notification": "notifications",
    "dm_": "dm",
    "wallet": "wallet",
    "payment": "wallet",
}


def channel_for_event(event: str) -> str | None:
    for prefix, channel in EVENT_CHANNELS.items():
        if event.startswith(prefix):
            return channel
    return None


@dataclass
class ClientConnection:
    """A single WebSocket client."""

    websocket: WebSocket
    user_id: int
    subscriptions: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0


class ConnectionManager:
    """Manages all active WebSocket connections.

    Safe under asyncio's single-threaded event loop.
    """

    def __init__(self, max_connections_per_user: int | None = None) -> None:
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._user_connections: dict[int, set[str]] = defaultdict(set)  # user_id -> {conn_ids}
        self._max_per_user = max_connections_per_user

    @property
    def max_connections_per_user(self) -> int:
        if self._max_per_user is not None:
            return self._max_per_user
        return get_settings().ws_max_connections_per_user

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def user_connection_count(self, user_id: int) -> int:
        return len(self._user_connections.get(user_id, ()))

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: int) -> bool:
        """Accept a connection. Returns False when the member is at the connection limit."""
        await websocket.accept()
        if self.user_connection_count(user_id) >= self.max_connections_per_user:
            await websocket.close(code=4008, reason="Too many connections")
            logger.warning("ws_connection_limit", user_id=user_id)
            return False
        self._connections[conn_id] = ClientConnection(websocket=websocket, user_id=user_id)
        self._user_connections[user_id].add(conn_id)
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id)
        return True

    async def disconnect(self, conn_id: str) -> None:
        client = self._connections.pop(conn_id, None)
        if client is None:
            return
        self._user_connections[client.user_id].discard(conn_id)
        if not self._user_connections[client.user_id]:
            del self._user_connections[client.user_id]
        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id)

    async def subscribe(self, conn_id: str, channel: str) -> bool:
        """Subscribe a connection to a channel. Returns False if invalid."""
        client = self._connections.get(conn_id)
        if client is None or channel not in VALID_CHANNELS:
            return False
        client.subscriptions.add(channel)
        logger.debug("ws_subscribed", conn_id=conn_id, channel=channel)
        return True

    async def unsubscribe(self, conn_id: str, channel: str) -> bool:
        client = self._connections.get(conn_id)
        if client is None:
            return False
        client.subscriptions.discard(channel)
        return True

    async def _send(self, conn_id: str, payload: str) -> bool:
        client = self._connections.get(conn_id)
        if client is None:
            return False
        try:
            await client.websocket.send_text(payload)
        except Exception:
            logger.debug("ws_send_failed", conn_id=conn_id, exc_info=True)
            await self.disconnect(conn_id)
            return False
        client.messages_sent += 1
        return True

    async def send_to_user(self, user_id: int, channel: str, message: dict[str, Any]) -> int:
        """Send to the member's connections subscribed to ``channel``."""
        payload = json.dumps({"channel": channel, "data": message}, default=str)
        sent = 0
        for conn_id in list(self._user_connections.get(user_id, ())):
            client = self._connections.get(conn_id)
            if client is not None and channel in client.subscriptions and await self._send(conn_id, payload):
                sent += 1
        return sent

    async def send_to_user_direct(self, user_id: int, message: dict[str, Any]) -> int:
        """Send to every open connection of the member, ignoring subscriptions."""
        payload = json.dumps(message, default=str)
        sent = 0
        for conn_id in list(self._user_connections.get(user_id, ())):
            if await self._send(conn_id, payload):
                sent += 1
        return sent

    async def deliver_event(self, user_id: int, event: str, data: dict[str, Any]) -> int:
        """Route a per-user event to its channel, or directly when it has none."""
        message = {"type": event, "payload": data}
        channel = channel_for_event(event)
        if channel is None:
            return await self.send_to_user_direct(user_id, message)
        return await self.send_to_user(user_id, channel, message)

    def get_stats(self) -> dict[str, Any]:
        channels: dict[str, int] = defaultdict(int)
        for client in self._connections.values():
            for channel in client.subscriptions:
                channels[channel] += 1
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "channels": dict(channels),
        }


# Global singleton
manager = ConnectionManager()
