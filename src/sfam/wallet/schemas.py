"""Pydantic schemas for wallet endpoints."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class WalletResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    points_balance: int
    last_topup_at: datetime | None = None
    next_topup_due_on: date | None = None


class TopupStatusResponse(BaseModel):
    needs_topup: bool
    reason: str | None = None
    message: str | None = None


class BonusStatusResponse(BaseModel):
    active: bool
    bonus_points: int
    end_time: datetime | None = None
    seconds_remaining: int | None = None
    countdown: str | None = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    type: str
    status: str
    amount_ttd: Decimal | None = None
    points_delta: int
    description: str | None = None
    rejection_reason: str | None = None
    created_at: datetime
    verified_at: datetime | None = None


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]


class RejectTopupRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class TopupResultResponse(BaseModel):
    transaction_id: int
    points_before: int
    points_after: int
    points_credited: int
    bonus_points: int


class ReconcileResponse(BaseModel):
    user_id: int
    wallet_balance: int
    ledger_total: int
    consistent: bool
