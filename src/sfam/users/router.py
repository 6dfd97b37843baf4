"""User management router: all /api/v1/users/* endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.auth.schemas import UserResponse
from sfam.auth.service import get_user_by_username
from sfam.database import get_session
from sfam.db.models import User
from sfam.users.schemas import ProfileUpdateRequest, PublicUserResponse, UserSearchResponse
from sfam.users.service import search_users, update_profile

router = APIRouter(prefix="/api/v1/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_profile(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)


@router.patch("/me", response_model=UserResponse)
async def update_my_profile(
    body: ProfileUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> UserResponse:
    try:
        user = await update_profile(
            db,
            user,
            username=body.username,
            first_name=body.first_name,
            last_name=body.last_name,
            avatar_url=body.avatar_url,
            bio=body.bio,
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    await db.commit()
    return UserResponse.model_validate(user)


@router.get("/search", response_model=UserSearchResponse)
async def search(
    q: str = Query("", max_length=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> UserSearchResponse:
    users = await search_users(db, q, user.id)
    return UserSearchResponse(users=[PublicUserResponse.model_validate(u) for u in users])


@router.get("/{username}", response_model=PublicUserResponse)
async def get_public_profile(
    username: str,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> PublicUserResponse:
    target = await get_user_by_username(db, username)
    if target is None or target.is_banned:
        raise HTTPException(status_code=404, detail="User not found")
    return PublicUserResponse.model_validate(target)
