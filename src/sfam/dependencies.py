"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from sfam.redis_client import get_redis as _get_redis


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client as a FastAPI dependency."""
    yield _get_redis()


async def get_optional_redis() -> AsyncGenerator[object | None, None]:
    """Yield the Redis client, or None when it has not been initialized.

    Realtime publishing is best-effort, so routes that only publish events
    keep working without Redis.
    """
    try:
        client = _get_redis()
    except RuntimeError:
        client = None
    yield client
