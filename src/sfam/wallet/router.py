"""Wallet API endpoints: balance, top-up receipts, admin verification and the reminder cron hook."""

from __future__ import annotations

import hmac
from dataclasses import asdict
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Header, HTTPException, Query, UploadFile
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user, require_admin
from sfam.config import get_settings
from sfam.database import get_session
from sfam.db.models import User
from sfam.dependencies import get_optional_redis
from sfam.email.service import get_email_service
from sfam.social.notification_push import deliver_push
from sfam.social.notification_service import create_notification
from sfam.wallet.receipts import delete_receipt, save_receipt
from sfam.wallet.reminders import reminder_display_name, run_topup_reminders
from sfam.wallet.schemas import (
    BonusStatusResponse,
    ReconcileResponse,
    RejectTopupRequest,
    TopupResultResponse,
    TopupStatusResponse,
    TransactionListResponse,
    TransactionResponse,
    WalletResponse,
)
from sfam.wallet.service import (
    TopupError,
    apply_topup,
    get_balance_total,
    get_bonus_status,
    get_or_create_wallet,
    get_platform_settings,
    get_topup_status,
    get_transaction,
    list_pending_topups,
    list_transactions,
    reject_topup,
    submit_receipt,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1", tags=["Wallet"])


# ── Member ──


@router.get("/wallet", response_model=WalletResponse)
async def my_wallet(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    wallet = await get_or_create_wallet(db, user.id)
    await db.commit()
    return WalletResponse.model_validate(wallet)


@router.get("/wallet/topup-status", response_model=TopupStatusResponse)
async def topup_status(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Whether gated features are locked until the member tops up."""
    status = await get_topup_status(db, user)
    await db.commit()
    return TopupStatusResponse(needs_topup=status.needs_topup, reason=status.reason, message=status.message)


@router.get("/wallet/bonus", response_model=BonusStatusResponse)
async def bonus_status(
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    platform = await get_platform_settings(db)
    await db.commit()
    return BonusStatusResponse(**get_bonus_status(platform))


@router.get("/wallet/transactions", response_model=TransactionListResponse)
async def my_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    txns = await list_transactions(db, user.id, limit, offset)
    return TransactionListResponse(transactions=[TransactionResponse.model_validate(t) for t in txns])


@router.post("/wallet/receipts", response_model=TransactionResponse, status_code=201)
async def upload_receipt(
    amount_ttd: str = Form(...),
    bank_account_id: str = Form(""),
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Submit proof of payment; the top-up stays pending until an admin verifies it."""
    try:
        amount = Decimal(amount_ttd)
    except InvalidOperation as e:
        raise HTTPException(status_code=400, detail="Invalid amount") from e
    if not amount.is_finite():
        raise HTTPException(status_code=400, detail="Invalid amount")

    content = await file.read()
    try:
        path = await save_receipt(user.id, file.filename or "", content, file.content_type)
    except TopupError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        txn = await submit_receipt(db, user.id, amount, bank_account_id, path)
    except TopupError as e:
        delete_receipt(path)
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return TransactionResponse.model_validate(txn)


# ── Admin ──


@router.get("/admin/topups/pending", response_model=TransactionListResponse)
async def pending_topups(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    txns = await list_pending_topups(db)
    return TransactionListResponse(transactions=[TransactionResponse.model_validate(t) for t in txns])


async def _send_payment_email(user_id: int, email: str, name: str, points: int, amount: float) -> None:
    try:
        await get_email_service().send_template(
            to=email,
            template_name="payment_verified",
            context={"name": name, "points": points, "amount": amount},
        )
    except Exception:
        logger.exception("payment_verified_email_failed", user_id=user_id)


@router.post("/admin/topups/{transaction_id}/verify", response_model=TopupResultResponse)
async def verify_topup(
    transaction_id: int,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    """Credit a pending top-up, then notify the member in-app, by push and by email."""
    try:
        result = await apply_topup(db, transaction_id, verified_by=admin.id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except TopupError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    txn = await get_transaction(db, transaction_id)
    member = await db.get(User, txn.user_id)
    notification = await create_notification(
        db,
        user_id=txn.user_id,
        type_="payment_verified",
        title="Payment verified",
        body=f"{result.points_credited} points were added to your wallet.",
        action_url="/wallet",
        metadata={"transaction_id": txn.id, "points": result.points_credited},
        redis=redis,
    )
    await db.commit()

    if notification is not None:
        background_tasks.add_task(deliver_push, notification.id)
    if member is not None and member.email:
        background_tasks.add_task(
            _send_payment_email,
            member.id,
            member.email,
            reminder_display_name(member),
            result.points_credited,
            float(txn.amount_ttd or 0),
        )
    return TopupResultResponse(**asdict(result))


@router.post("/admin/topups/{transaction_id}/reject", response_model=TransactionResponse)
async def reject_topup_endpoint(
    transaction_id: int,
    body: RejectTopupRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    try:
        txn = await reject_topup(db, transaction_id, body.reason, rejected_by=admin.id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except TopupError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return TransactionResponse.model_validate(txn)


@router.get("/admin/wallets/{user_id}/reconcile", response_model=ReconcileResponse)
async def reconcile_wallet(
    user_id: int,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
):
    """Compare the stored balance with the sum of verified ledger deltas."""
    wallet = await get_or_create_wallet(db, user_id)
    total = await get_balance_total(db, user_id)
    return ReconcileResponse(
        user_id=user_id,
        wallet_balance=wallet.points_balance,
        ledger_total=total,
        consistent=wallet.points_balance == total,
    )


# ── Cron ──


def _check_cron_secret(x_cron_secret: str | None, authorization: str | None) -> None:
    configured = get_settings().cron_secret
    if not configured:
        raise HTTPException(status_code=500, detail="CRON_SECRET not configured")
    provided = x_cron_secret
    if not provided and authorization:
        provided = authorization.removeprefix("Bearer ").strip()
    if not provided or not hmac.compare_digest(provided, configured):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/cron/topup-reminders")
async def topup_reminders_cron(
    x_cron_secret: str | None = Header(None),
    authorization: str | None = Header(None),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    _check_cron_secret(x_cron_secret, authorization)
    try:
        outcome = await run_topup_reminders(db, get_email_service())
    except ValueError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    await db.commit()
    return outcome
