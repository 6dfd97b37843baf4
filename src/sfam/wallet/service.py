"""Wallet and points ledger.

Every balance change happens under a row lock on the wallet and writes a
``Transaction`` row in the same database transaction, so the balance always
equals the sum of verified ``points_delta`` values.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.config import get_settings
from sfam.db.models import PlatformSettings, RevenueLedger, Transaction, User, Wallet, as_utc
from sfam.wallet.topup import TopupStatus, add_months, bonus_is_active, evaluate_topup, format_countdown

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class WalletError(ValueError):
    """Invalid wallet operation."""


class TopupError(WalletError):
    """A top-up cannot be applied or submitted."""


class InsufficientPointsError(WalletError):
    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient points. Required: {required}, Available: {available}")


@dataclass(frozen=True)
class TopupResult:
    transaction_id: int
    points_before: int
    points_after: int
    points_credited: int
    bonus_points: int = 0


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_platform_settings(db: AsyncSession) -> PlatformSettings:
    """Return the singleton settings row, creating it with defaults if missing."""
    row = await db.get(PlatformSettings, 1)
    if row is None:
        settings = get_settings()
        row = PlatformSettings(
            id=1,
            mandatory_topup_amount=Decimal(str(settings.mandatory_topup_amount)),
            storage_purchase_price_per_gb=settings.storage_purchase_price_per_gb,
            storage_monthly_cost_per_gb=settings.storage_monthly_cost_per_gb,
        )
        db.add(row)
        await db.flush()
    return row


async def get_or_create_wallet(db: AsyncSession, user_id: int) -> Wallet:
    result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
    wallet = result.scalar_one_or_none()
    if wallet is None:
        wallet = Wallet(user_id=user_id, points_balance=0)
        db.add(wallet)
        await db.flush()
    return wallet


async def lock_wallet(db: AsyncSession, user_id: int) -> Wallet:
    """Fetch the wallet with ``SELECT ... FOR UPDATE``, creating it first if needed."""
    await get_or_create_wallet(db, user_id)
    result = await db.execute(
        select(Wallet).where(Wallet.user_id == user_id).with_for_update().execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_transaction(db: AsyncSession, transaction_id: int, *, for_update: bool = False) -> Transaction:
    stmt = select(Transaction).where(Transaction.id == transaction_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    txn = result.scalar_one_or_none()
    if txn is None:
        msg = "Transaction not found"
        raise LookupError(msg)
    return txn


async def list_transactions(db: AsyncSession, user_id: int, limit: int = 50, offset: int = 0) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.user_id == user_id)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def list_pending_topups(db: AsyncSession, limit: int = 100) -> list[Transaction]:
    result = await db.execute(
        select(Transaction)
        .where(Transaction.type == "top_up", Transaction.status == "pending")
        .order_by(Transaction.created_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Gating and promotions
# ---------------------------------------------------------------------------


async def get_topup_status(db: AsyncSession, user: User, today: date | None = None) -> TopupStatus:
    wallet = await get_or_create_wallet(db, user.id)
    return evaluate_topup(
        user.role,
        wallet.points_balance,
        wallet.next_topup_due_on,
        today or datetime.now(timezone.utc).date(),
    )


def get_bonus_status(settings: PlatformSettings, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    end_time = as_utc(settings.topup_bonus_end_time)
    active = bonus_is_active(
        bool(settings.topup_bonus_enabled), settings.topup_bonus_points or 0, end_time, now
    )
    seconds_remaining = (end_time - now).total_seconds() if end_time else None
    return {
        "active": active,
        "bonus_points": settings.topup_bonus_points or 0,
        "end_time": end_time,
        "seconds_remaining": max(0, int(seconds_remaining)) if seconds_remaining is not None else None,
        "countdown": format_countdown(seconds_remaining) if seconds_remaining is not None else None,
    }


# ---------------------------------------------------------------------------
# Points movements
# ---------------------------------------------------------------------------


async def spend_points(
    db: AsyncSession,
    user_id: int,
    points: int,
    tx_type: str,
    description: str,
) -> tuple[Wallet, Transaction]:
    """Deduct points under lock, raising InsufficientPointsError if short."""
    if points <= 0:
        msg = "Points to spend must be positive"
        raise WalletError(msg)
    wallet = await lock_wallet(db, user_id)
    if wallet.points_balance < points:
        raise InsufficientPointsError(points, wallet.points_balance)

    now = datetime.now(timezone.utc)
    wallet.points_balance -= points
    wallet.updated_at = now
    txn = Transaction(
        user_id=user_id,
        type=tx_type,
        status="verified",
        points_delta=-points,
        description=description,
        created_at=now,
        verified_at=now,
    )
    db.add(txn)
    await db.flush()
    return wallet, txn


async def submit_receipt(
    db: AsyncSession,
    user_id: int,
    amount: Decimal,
    bank_account_id: str,
    receipt_path: str,
) -> Transaction:
    """Record a pending top-up awaiting admin verification."""
    platform = await get_platform_settings(db)
    minimum = Decimal(platform.mandatory_topup_amount)
    if amount < minimum:
        msg = f"Minimum top-up amount is TTD ${minimum:,.2f}"
        raise TopupError(msg)
    if not bank_account_id:
        msg = "A bank account must be selected"
        raise TopupError(msg)

    txn = Transaction(
        user_id=user_id,
        type="top_up",
        status="pending",
        amount_ttd=amount.quantize(CENTS),
        points_delta=0,
        receipt_path=receipt_path,
        bank_account_id=bank_account_id,
        description="Top-up receipt submitted",
    )
    db.add(txn)
    await db.flush()
    logger.info("Top-up receipt %d submitted by user %d for %s", txn.id, user_id, amount)
    return txn


async def apply_topup(
    db: AsyncSession,
    transaction_id: int,
    verified_by: int | None = None,
    now: datetime | None = None,
) -> TopupResult:
    """Verify a pending top-up and credit points at the current price.

    Points are ``floor(amount / buy_price_per_point)``. The platform's margin
    is booked as ``topup_profit``; an active promotion adds bonus points and
    a matching ``topup_bonus_expense``. The next due date moves to one
    calendar month from today.
    """
    now = now or datetime.now(timezone.utc)
    txn = await get_transaction(db, transaction_id, for_update=True)
    if txn.type != "top_up":
        msg = "Only top-up transactions can be applied"
        raise TopupError(msg)
    if txn.status != "pending":
        msg = f"Top-up already {txn.status}"
        raise TopupError(msg)
    if txn.amount_ttd is None or txn.amount_ttd <= 0:
        msg = "Top-up amount must be positive"
        raise TopupError(msg)

    platform = await get_platform_settings(db)
    buy_price = Decimal(platform.buy_price_per_point)
    user_value = Decimal(platform.user_value_per_point)
    if buy_price <= 0 or user_value <= 0:
        msg = "Point pricing is not configured"
        raise TopupError(msg)

    amount = Decimal(txn.amount_ttd)
    points = int((amount / buy_price).to_integral_value(rounding=ROUND_FLOOR))
    if points <= 0:
        msg = "Top-up amount too low for the current point price"
        raise TopupError(msg)

    wallet = await lock_wallet(db, txn.user_id)
    points_before = wallet.points_balance

    txn.status = "verified"
    txn.points_delta = points
    txn.buy_price_per_point = buy_price
    txn.user_value_per_point = user_value
    txn.verified_at = now
    txn.verified_by = verified_by
    db.add(RevenueLedger(
        transaction_id=txn.id,
        user_id=txn.user_id,
        source="topup_profit",
        amount_ttd=((buy_price - user_value) * points).quantize(CENTS),
        created_at=now,
    ))

    bonus = 0
    if bonus_is_active(
        bool(platform.topup_bonus_enabled),
        platform.topup_bonus_points or 0,
        as_utc(platform.topup_bonus_end_time),
        now,
    ):
        bonus = platform.topup_bonus_points
        bonus_txn = Transaction(
            user_id=txn.user_id,
            type="topup_bonus",
            status="verified",
            points_delta=bonus,
            description=f"Top-up bonus for transaction {txn.id}",
            created_at=now,
            verified_at=now,
            verified_by=verified_by,
        )
        db.add(bonus_txn)
        await db.flush()
        db.add(RevenueLedger(
            transaction_id=bonus_txn.id,
            user_id=txn.user_id,
            source="topup_bonus_expense",
            amount_ttd=(-(user_value * bonus)).quantize(CENTS),
            created_at=now,
        ))

    wallet.points_balance = points_before + points + bonus
    wallet.last_topup_at = now
    wallet.next_topup_due_on = add_months(now.date(), 1)
    wallet.updated_at = now
    await db.flush()

    logger.info(
        "Applied top-up %d for user %d: %d points (+%d bonus)", txn.id, txn.user_id, points, bonus
    )
    return TopupResult(
        transaction_id=txn.id,
        points_before=points_before,
        points_after=wallet.points_balance,
        points_credited=points + bonus,
        bonus_points=bonus,
    )


async def reject_topup(
    db: AsyncSession,
    transaction_id: int,
    reason: str,
    rejected_by: int | None = None,
) -> Transaction:
    txn = await get_transaction(db, transaction_id, for_update=True)
    if txn.type != "top_up" or txn.status != "pending":
        msg = "Only pending top-ups can be rejected"
        raise TopupError(msg)
    txn.status = "rejected"
    txn.rejection_reason = reason
    txn.verified_by = rejected_by
    txn.verified_at = datetime.now(timezone.utc)
    await db.flush()
    return txn


async def get_balance_total(db: AsyncSession, user_id: int) -> int:
    """Sum of verified ledger deltas; equals the wallet balance."""
    result = await db.execute(
        select(func.coalesce(func.sum(Transaction.points_delta), 0)).where(
            Transaction.user_id == user_id, Transaction.status == "verified"
        )
    )
    return int(result.scalar_one())
