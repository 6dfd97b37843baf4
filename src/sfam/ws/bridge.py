"""Bridges Redis pub/sub to WebSocket clients.

Services publish ``{"event": ..., "data": ...}`` to ``ws:user:<id>``; the
bridge pattern-subscribes to those channels and hands each payload to the
connection manager, so events reach members connected to any API process.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from sfam.redis_client import USER_CHANNEL_PREFIX
from sfam.ws.manager import ConnectionManager, manager

logger = structlog.get_logger()

USER_PATTERN = f"{USER_CHANNEL_PREFIX}*"


class PubSubBridge:
    """Subscribes to per-user Redis channels and pushes messages to WebSocket clients."""

    def __init__(self, redis_client: aioredis.Redis, connections: ConnectionManager | None = None) -> None:
        self.redis = redis_client
        self.connections = connections or manager
        self._running = False

    async def handle_message(self, message: dict) -> int:
        """Forward one pub/sub message. Returns the number of sockets reached."""
        if message.get("type") != "pmessage":
            return 0
        redis_channel = message.get("channel", "")
        if isinstance(redis_channel, bytes):
            redis_channel = redis_channel.decode()
        if not redis_channel.startswith(USER_CHANNEL_PREFIX):
            return 0

        try:
            user_id = int(redis_channel.removeprefix(USER_CHANNEL_PREFIX))
        except ValueError:
            logger.warning("pubsub_invalid_user_id", channel=redis_channel)
            return 0

        try:
            data = message.get("data", b"")
            if isinstance(data, bytes):
                data = data.decode()
            payload = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("pubsub_invalid_message", channel=redis_channel)
            return 0

        if not isinstance(payload, dict):
            logger.warning("pubsub_invalid_message", channel=redis_channel)
            return 0

        event_type = payload.get("event", "notification")
        event_data = payload.get("data", payload)
        sent = await self.connections.deliver_event(user_id, event_type, event_data)
        if sent > 0:
            logger.debug("user_event_sent", user_id=user_id, event_type=event_type, recipients=sent)
        return sent

    async def start(self) -> None:
        """Listen until stopped or cancelled."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(USER_PATTERN)
        logger.info("pubsub_bridge_started", patterns=[USER_PATTERN])

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                try:
                    await self.handle_message(message)
                except Exception:
                    logger.exception("pubsub_message_failed")
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
