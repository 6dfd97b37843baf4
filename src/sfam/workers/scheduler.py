"""arq worker: scheduled wallet reminders, monthly storage billing and push delivery.

Usage: arq sfam.workers.settings.WorkerSettings
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from sfam.config import get_settings
from sfam.database import close_db, init_db, session_scope
from sfam.email.service import EmailService
from sfam.social.notification_push import deliver_push
from sfam.storage.service import bill_all_storage
from sfam.wallet.reminders import run_topup_reminders

logger = logging.getLogger(__name__)


async def worker_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Open DB and Redis connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    ctx["redis"] = redis_client
    ctx["email_service"] = EmailService(redis=redis_client)
    logger.info("Worker started")


async def worker_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Worker shut down")


async def send_topup_reminders(ctx: dict) -> dict[str, Any]:  # type: ignore[type-arg]
    """Daily: email members whose mandatory top-up is due or overdue."""
    async with session_scope() as db:
        outcome = await run_topup_reminders(db, ctx["email_service"])
        await db.commit()
    logger.info("Top-up reminders: %s", outcome.get("summary", outcome))
    return outcome


async def bill_storage(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Monthly: charge every member for storage above the free tier."""
    today = datetime.now(timezone.utc).date()
    async with session_scope() as db:
        summary = await bill_all_storage(db, today)
        await db.commit()
    return summary


async def deliver_push_job(ctx: dict, notification_id: int) -> bool:  # type: ignore[type-arg]
    result = await deliver_push(notification_id)
    return bool(result and result.success)


class WorkerSettings:
    """arq worker settings for scheduled jobs."""

    functions = [send_topup_reminders, bill_storage, deliver_push_job]
    cron_jobs = [
        cron(send_topup_reminders, hour=9, minute=0),  # daily 09:00 UTC
        cron(bill_storage, day=1, hour=0, minute=5),  # 1st of the month
    ]
    on_startup = worker_startup
    on_shutdown = worker_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 4
    job_timeout = 600
