"""Follow API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.database import get_session
from sfam.db.models import User
from sfam.dependencies import get_optional_redis
from sfam.social.follow_service import (
    FollowStatus,
    InvalidFollowTarget,
    follow_user,
    get_follow_counts,
    get_follow_status,
    list_followers,
    list_following,
    unfollow_user,
)
from sfam.social.schemas import (
    FollowCountsResponse,
    FollowListResponse,
    FollowStatusResponse,
    FollowUserResponse,
)

router = APIRouter(prefix="/api/v1/follows", tags=["Follows"])


def _status(status: FollowStatus) -> FollowStatusResponse:
    return FollowStatusResponse(
        is_following=status.is_following,
        is_followed_by=status.is_followed_by,
        is_mutual=status.is_mutual,
    )


def _user_list(users: list[User], total: int) -> FollowListResponse:
    return FollowListResponse(
        users=[
            FollowUserResponse(
                id=u.id,
                username=u.username,
                first_name=u.first_name,
                last_name=u.last_name,
                avatar_url=u.avatar_url,
            )
            for u in users
        ],
        total=total,
    )


@router.get("/counts", response_model=dict[int, FollowCountsResponse])
async def follow_counts(
    user_ids: list[int] = Query(...),
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    counts = await get_follow_counts(db, user_ids)
    return {uid: FollowCountsResponse(**c) for uid, c in counts.items()}


@router.get("/{user_id}", response_model=FollowStatusResponse)
async def follow_status(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    return _status(await get_follow_status(db, user.id, user_id))


@router.post("/{user_id}", response_model=FollowStatusResponse)
async def follow(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    try:
        status = await follow_user(db, user, user_id, redis=redis)
    except InvalidFollowTarget as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    await db.commit()
    return _status(status)


@router.delete("/{user_id}", response_model=FollowStatusResponse)
async def unfollow(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        status = await unfollow_user(db, user.id, user_id)
    except InvalidFollowTarget as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return _status(status)


@router.get("/{user_id}/followers", response_model=FollowListResponse)
async def followers(
    user_id: int,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    users = await list_followers(db, user_id, limit, offset)
    total = (await get_follow_counts(db, [user_id]))[user_id]["followers"]
    return _user_list(users, total)


@router.get("/{user_id}/following", response_model=FollowListResponse)
async def following(
    user_id: int,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    users = await list_following(db, user_id, limit, offset)
    total = (await get_follow_counts(db, [user_id]))[user_id]["following"]
    return _user_list(users, total)
