"""Follow graph.

Rules:
- Following is one-directional; two follows make the pair mutual
- Self-follows are rejected
- Following twice is a no-op
- A new follow notifies the followed member
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.db.models import User, UserFollow
from sfam.social.notification_service import create_notification

logger = logging.getLogger(__name__)


class InvalidFollowTarget(ValueError):
    pass


@dataclass(frozen=True)
class FollowStatus:
    is_following: bool
    is_followed_by: bool

    @property
    def is_mutual(self) -> bool:
        return self.is_following and self.is_followed_by


async def _edge_exists(db: AsyncSession, follower_id: int, following_id: int) -> bool:
    result = await db.execute(
        select(UserFollow.id).where(
            UserFollow.follower_id == follower_id, UserFollow.following_id == following_id
        )
    )
    return result.scalar_one_or_none() is not None


async def get_follow_status(db: AsyncSession, viewer_id: int, target_id: int) -> FollowStatus:
    if viewer_id == target_id:
        return FollowStatus(False, False)
    return FollowStatus(
        is_following=await _edge_exists(db, viewer_id, target_id),
        is_followed_by=await _edge_exists(db, target_id, viewer_id),
    )


async def _require_target(db: AsyncSession, follower_id: int, target_id: int) -> User:
    if follower_id == target_id:
        msg = "You cannot follow yourself"
        raise InvalidFollowTarget(msg)
    target = await db.get(User, target_id)
    if target is None:
        msg = "User not found"
        raise LookupError(msg)
    return target


async def follow_user(
    db: AsyncSession,
    follower: User,
    target_id: int,
    redis: Any | None = None,  # noqa: ANN401
) -> FollowStatus:
    """Follow ``target_id``. Only the first follow creates a notification."""
    await _require_target(db, follower.id, target_id)

    if not await _edge_exists(db, follower.id, target_id):
        db.add(UserFollow(
            follower_id=follower.id,
            following_id=target_id,
            created_at=datetime.now(timezone.utc),
        ))
        await db.flush()
        await create_notification(
            db,
            user_id=target_id,
            type_="follow",
            title="New follower",
            body=f"{follower.full_name or follower.username} started following you",
            action_url=f"/profile/{follower.username}",
            metadata={"follower_id": follower.id},
            redis=redis,
        )
        logger.info("User %d followed user %d", follower.id, target_id)

    return await get_follow_status(db, follower.id, target_id)


async def unfollow_user(db: AsyncSession, follower_id: int, target_id: int) -> FollowStatus:
    if follower_id == target_id:
        msg = "You cannot unfollow yourself"
        raise InvalidFollowTarget(msg)
    await db.execute(
        delete(UserFollow).where(
            UserFollow.follower_id == follower_id, UserFollow.following_id == target_id
        )
    )
    await db.flush()
    return await get_follow_status(db, follower_id, target_id)


async def get_follow_counts(db: AsyncSession, user_ids: list[int]) -> dict[int, dict[str, int]]:
    """Return ``{user_id: {"followers": n, "following": m}}`` for each requested id."""
    counts = {uid: {"followers": 0, "following": 0} for uid in user_ids}
    if not counts:
        return counts

    followers = await db.execute(
        select(UserFollow.following_id, func.count())
        .where(UserFollow.following_id.in_(list(counts)))
        .group_by(UserFollow.following_id)
    )
    for uid, n in followers.all():
        counts[uid]["followers"] = n

    following = await db.execute(
        select(UserFollow.follower_id, func.count())
        .where(UserFollow.follower_id.in_(list(counts)))
        .group_by(UserFollow.follower_id)
    )
    for uid, n in following.all():
        counts[uid]["following"] = n
    return counts


async def list_followers(db: AsyncSession, user_id: int, limit: int = 50, offset: int = 0) -> list[User]:
    result = await db.execute(
        select(User)
        .join(UserFollow, UserFollow.follower_id == User.id)
        .where(UserFollow.following_id == user_id)
        .order_by(UserFollow.created_at.desc(), UserFollow.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def list_following(db: AsyncSession, user_id: int, limit: int = 50, offset: int = 0) -> list[User]:
    result = await db.execute(
        select(User)
        .join(UserFollow, UserFollow.following_id == User.id)
        .where(UserFollow.follower_id == user_id)
        .order_by(UserFollow.created_at.desc(), UserFollow.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
