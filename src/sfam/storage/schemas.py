"""Pydantic schemas for storage endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, Field


class StorageResponse(BaseModel):
    storage_limit_bytes: int
    storage_used_bytes: int
    monthly_cost_points: int
    last_billing_date: date | None = None


class RecordingResponse(BaseModel):
    id: int
    event_id: int
    file_size_bytes: int
    created_at: datetime


class StoragePricing(BaseModel):
    purchase_price_per_gb: int
    monthly_cost_per_gb: int


class StorageOverviewResponse(BaseModel):
    storage: StorageResponse
    recordings: list[RecordingResponse]
    pricing: StoragePricing


class PurchaseStorageRequest(BaseModel):
    additional_gb: int = Field(..., gt=0, le=1024)


class PurchaseStorageResponse(BaseModel):
    success: bool = True
    new_limit_bytes: int
    points_deducted: int
    additional_gb: int


class DowngradeStorageRequest(BaseModel):
    new_limit_gb: int = Field(..., gt=0)


class DowngradeStorageResponse(BaseModel):
    success: bool = True
    new_limit_bytes: int
    new_limit_gb: int
