"""Recording storage quotas.

Rules:
- The first GiB is free; every started GiB above it costs points each month
- Extra capacity is bought once with points and billed monthly afterwards
- Downgrades never refund and never go below current usage or the free tier
- Billing runs at most once per calendar month per user
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.config import get_settings
from sfam.db.models import CommunityEvent, EventRecording, UserStorage
from sfam.wallet.service import InsufficientPointsError, get_platform_settings, lock_wallet, spend_points

logger = logging.getLogger(__name__)

GIB = 1024**3


class StorageError(ValueError):
    pass


@dataclass(frozen=True)
class BillingResult:
    user_id: int
    status: str  # "billed", "free", "skipped" or "failed"
    points: int = 0
    error: str | None = None


def monthly_cost(limit_bytes: int, price_per_gb: int | None = None) -> int:
    """Monthly points for a quota; only capacity above the free GiB is billed."""
    if price_per_gb is None:
        price_per_gb = get_settings().storage_monthly_cost_per_gb
    billable = max(0, limit_bytes - GIB)
    return math.ceil(billable / GIB * price_per_gb)


async def get_or_create_storage(db: AsyncSession, user_id: int) -> UserStorage:
    result = await db.execute(select(UserStorage).where(UserStorage.user_id == user_id))
    storage = result.scalar_one_or_none()
    if storage is None:
        storage = UserStorage(
            user_id=user_id,
            storage_limit_bytes=get_settings().storage_free_bytes,
            storage_used_bytes=0,
            monthly_cost_points=0,
        )
        db.add(storage)
        await db.flush()
    return storage


async def _lock_storage(db: AsyncSession, user_id: int) -> UserStorage:
    await get_or_create_storage(db, user_id)
    result = await db.execute(
        select(UserStorage)
        .where(UserStorage.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def calculate_usage(db: AsyncSession, user_id: int) -> int:
    """Total bytes of recordings across events the user owns."""
    result = await db.execute(
        select(func.coalesce(func.sum(EventRecording.file_size_bytes), 0))
        .join(CommunityEvent, CommunityEvent.id == EventRecording.event_id)
        .where(CommunityEvent.owner_id == user_id, EventRecording.file_size_bytes > 0)
    )
    return int(result.scalar_one())


async def list_recordings(db: AsyncSession, user_id: int) -> list[EventRecording]:
    result = await db.execute(
        select(EventRecording)
        .join(CommunityEvent, CommunityEvent.id == EventRecording.event_id)
        .where(CommunityEvent.owner_id == user_id, EventRecording.file_size_bytes > 0)
        .order_by(EventRecording.created_at.desc(), EventRecording.id.desc())
    )
    return list(result.scalars().all())


async def get_storage(db: AsyncSession, user_id: int) -> UserStorage:
    """Return the quota with usage and monthly cost refreshed."""
    platform = await get_platform_settings(db)
    storage = await get_or_create_storage(db, user_id)
    storage.storage_used_bytes = await calculate_usage(db, user_id)
    storage.monthly_cost_points = monthly_cost(storage.storage_limit_bytes, platform.storage_monthly_cost_per_gb)
    storage.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return storage


async def purchase_storage(db: AsyncSession, user_id: int, additional_gb: int) -> tuple[UserStorage, int]:
    """Buy ``additional_gb`` GiB with points. Returns (storage, points_spent).

    Raises:
        StorageError: for a non-positive amount.
        InsufficientPointsError: when the wallet cannot cover the price.
    """
    if additional_gb <= 0:
        msg = "Invalid storage amount"
        raise StorageError(msg)

    platform = await get_platform_settings(db)
    cost = additional_gb * platform.storage_purchase_price_per_gb
    await spend_points(db, user_id, cost, "storage_purchase", f"Purchased {additional_gb} GB of storage")

    storage = await _lock_storage(db, user_id)
    storage.storage_limit_bytes += additional_gb * GIB
    storage.monthly_cost_points = monthly_cost(storage.storage_limit_bytes, platform.storage_monthly_cost_per_gb)
    storage.updated_at = datetime.now(timezone.utc)
    await db.flush()
    logger.info("User %d bought %d GB of storage for %d points", user_id, additional_gb, cost)
    return storage, cost


async def downgrade_storage(db: AsyncSession, user_id: int, new_limit_gb: int) -> UserStorage:
    """Lower the quota to ``new_limit_gb`` GiB. Purchases are not refunded."""
    if new_limit_gb <= 0:
        msg = "Invalid storage amount"
        raise StorageError(msg)

    new_limit = new_limit_gb * GIB
    if new_limit < GIB:
        msg = "Storage limit cannot be below the free 1 GB tier"
        raise StorageError(msg)

    platform = await get_platform_settings(db)
    storage = await _lock_storage(db, user_id)
    used = await calculate_usage(db, user_id)
    if new_limit < used:
        msg = "New limit is below current usage. Delete recordings first."
        raise StorageError(msg)
    if new_limit > storage.storage_limit_bytes:
        msg = "New limit exceeds current limit. Use purchase to increase storage."
        raise StorageError(msg)

    storage.storage_limit_bytes = new_limit
    storage.storage_used_bytes = used
    storage.monthly_cost_points = monthly_cost(new_limit, platform.storage_monthly_cost_per_gb)
    storage.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return storage


async def bill_monthly(db: AsyncSession, user_id: int, today: date | None = None) -> BillingResult:
    """Charge this month's storage cost once. Insufficient balance still stamps the date."""
    today = today or datetime.now(timezone.utc).date()
    platform = await get_platform_settings(db)
    storage = await _lock_storage(db, user_id)

    last = storage.last_billing_date
    if last is not None and (last.year, last.month) == (today.year, today.month):
        return BillingResult(user_id, "skipped")

    cost = monthly_cost(storage.storage_limit_bytes, platform.storage_monthly_cost_per_gb)
    storage.monthly_cost_points = cost
    storage.last_billing_date = today
    storage.updated_at = datetime.now(timezone.utc)
    if cost == 0:
        await db.flush()
        return BillingResult(user_id, "free")

    wallet = await lock_wallet(db, user_id)
    if wallet.points_balance < cost:
        await db.flush()
        error = str(InsufficientPointsError(cost, wallet.points_balance))
        logger.warning("Storage billing failed for user %d: %s", user_id, error)
        return BillingResult(user_id, "failed", cost, error)

    await spend_points(db, user_id, cost, "storage_billing", f"Storage billing for {today:%Y-%m}")
    return BillingResult(user_id, "billed", cost)


async def bill_all_storage(db: AsyncSession, today: date | None = None) -> dict[str, int]:
    """Run ``bill_monthly`` for every quota row; the caller commits."""
    result = await db.execute(select(UserStorage.user_id).order_by(UserStorage.user_id))
    summary = {"billed": 0, "free": 0, "skipped": 0, "failed": 0}
    for user_id in result.scalars().all():
        outcome = await bill_monthly(db, user_id, today)
        summary[outcome.status] += 1
    logger.info("Storage billing run: %s", summary)
    return summary
