"""User profile and directory business logic."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import String, func, or_, select

from sfam.db.models import User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()

SEARCH_MIN_LENGTH = 2
SEARCH_LIMIT = 10


async def update_profile(
    db: AsyncSession,
    user: User,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    avatar_url: str | None = None,
    bio: str | None = None,
) -> User:
    """
    Update user profile fields.

    Raises:
        ValueError: If the username is already taken (case-insensitive).
    """
    if username is not None:
        normalized = username.lower()
        result = await db.execute(
            select(User)
            .where(User.username_normalized == normalized)
            .where(User.id != user.id)
        )
        if result.scalar_one_or_none() is not None:
            msg = "Username already taken"
            raise ValueError(msg)
        user.username = username
        user.username_normalized = normalized

    if first_name is not None:
        user.first_name = first_name
    if last_name is not None:
        user.last_name = last_name
    if avatar_url is not None:
        user.avatar_url = avatar_url
    if bio is not None:
        user.bio = bio

    await db.flush()
    logger.info("profile_updated", user_id=user.id)
    return user


async def search_users(db: AsyncSession, query: str, viewer_id: int) -> list[User]:
    """Case-insensitive substring search over names, username and email."""
    term = (query or "").strip().lower()
    if len(term) < SEARCH_MIN_LENGTH:
        return []

    def _matches(column):  # noqa: ANN001, ANN202
        return func.lower(func.coalesce(column, ""), type_=String).contains(term, autoescape=True)

    result = await db.execute(
        select(User)
        .where(
            User.id != viewer_id,
            User.is_banned.is_(False),
            or_(_matches(User.username), _matches(User.first_name), _matches(User.last_name), _matches(User.email)),
        )
        .order_by(User.username)
        .limit(SEARCH_LIMIT)
    )
    return list(result.scalars().all())

