"""FastAPI application factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sfam.auth.router import router as auth_router
from sfam.config import get_settings
from sfam.database import close_db, init_db
from sfam.dm.router import router as dm_router
from sfam.email.router import router as email_router
from sfam.health.router import router as health_router
from sfam.middleware import setup_middleware
from sfam.redis_client import close_redis, get_redis, init_redis
from sfam.social.follow_router import router as follow_router
from sfam.social.notification_router import router as notification_router
from sfam.storage.router import router as storage_router
from sfam.users.router import router as users_router
from sfam.wallet.router import router as wallet_router
from sfam.ws.bridge import PubSubBridge
from sfam.ws.router import router as ws_router


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup and shutdown lifecycle."""
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)

    # Redis pub/sub -> WebSocket bridge
    bridge = PubSubBridge(get_redis())
    bridge_task = asyncio.create_task(bridge.start())

    yield

    await bridge.stop()
    bridge_task.cancel()
    try:
        await bridge_task
    except asyncio.CancelledError:
        pass

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Success Family API",
        description="Backend API for the Success Family community platform",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    setup_middleware(app, settings)
    app.include_router(health_router, tags=["Health"])
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(follow_router)
    app.include_router(notification_router)
    app.include_router(dm_router)
    app.include_router(wallet_router)
    app.include_router(storage_router)
    app.include_router(email_router)
    app.include_router(ws_router)

    return app


app = create_app()
