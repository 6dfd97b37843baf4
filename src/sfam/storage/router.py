"""Storage quota endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.database import get_session
from sfam.db.models import User, UserStorage
from sfam.storage.schemas import (
    DowngradeStorageRequest,
    DowngradeStorageResponse,
    PurchaseStorageRequest,
    PurchaseStorageResponse,
    RecordingResponse,
    StorageOverviewResponse,
    StoragePricing,
    StorageResponse,
)
from sfam.storage.service import (
    StorageError,
    downgrade_storage,
    get_storage,
    list_recordings,
    purchase_storage,
)
from sfam.wallet.service import InsufficientPointsError, get_platform_settings

router = APIRouter(prefix="/api/v1/storage", tags=["Storage"])


def _storage_response(storage: UserStorage) -> StorageResponse:
    return StorageResponse(
        storage_limit_bytes=storage.storage_limit_bytes,
        storage_used_bytes=storage.storage_used_bytes,
        monthly_cost_points=storage.monthly_cost_points,
        last_billing_date=storage.last_billing_date,
    )


@router.get("", response_model=StorageOverviewResponse)
async def storage_overview(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Quota, usage, recordings and pricing."""
    storage = await get_storage(db, user.id)
    recordings = await list_recordings(db, user.id)
    platform = await get_platform_settings(db)
    await db.commit()
    return StorageOverviewResponse(
        storage=_storage_response(storage),
        recordings=[
            RecordingResponse(
                id=r.id, event_id=r.event_id, file_size_bytes=r.file_size_bytes or 0, created_at=r.created_at
            )
            for r in recordings
        ],
        pricing=StoragePricing(
            purchase_price_per_gb=platform.storage_purchase_price_per_gb,
            monthly_cost_per_gb=platform.storage_monthly_cost_per_gb,
        ),
    )


@router.post("/purchase", response_model=PurchaseStorageResponse)
async def purchase(
    body: PurchaseStorageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        storage, cost = await purchase_storage(db, user.id, body.additional_gb)
    except InsufficientPointsError as e:
        await db.rollback()
        return JSONResponse(
            status_code=400,
            content={"detail": "Insufficient points", "required": e.required, "available": e.available},
        )
    except StorageError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return PurchaseStorageResponse(
        new_limit_bytes=storage.storage_limit_bytes,
        points_deducted=cost,
        additional_gb=body.additional_gb,
    )


@router.post("/downgrade", response_model=DowngradeStorageResponse)
async def downgrade(
    body: DowngradeStorageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        storage = await downgrade_storage(db, user.id, body.new_limit_gb)
    except StorageError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return DowngradeStorageResponse(new_limit_bytes=storage.storage_limit_bytes, new_limit_gb=body.new_limit_gb)
