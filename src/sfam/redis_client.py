"""Redis connection pool and per-user realtime publishing."""

import json
import logging
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_pool: redis.Redis | None = None

USER_CHANNEL_PREFIX = "ws:user:"


async def init_redis(url: str) -> None:
    """Initialize the Redis connection pool."""
    global _pool  # noqa: PLW0603
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_redis() -> redis.Redis:
    """Get the Redis client (FastAPI dependency)."""
    if _pool is None:
        msg = "Redis not initialized. Call init_redis() first."
        raise RuntimeError(msg)
    return _pool


def user_channel(user_id: int) -> str:
    return f"{USER_CHANNEL_PREFIX}{user_id}"


async def publish_to_user(
    redis_client: Any | None,  # noqa: ANN401
    user_id: int,
    event: str,
    data: dict[str, Any],
) -> bool:
    """Publish a realtime event to one user's websocket channel.

    Failures are logged and swallowed; realtime delivery never fails a request.
    """
    if redis_client is None:
        return False
    try:
        await redis_client.publish(
            user_channel(user_id),
            json.dumps({"event": event, "data": data}, default=str),
        )
    except Exception:
        logger.warning("Failed to publish %s to user %d", event, user_id, exc_info=True)
        return False
    return True
