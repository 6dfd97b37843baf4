"""Notification creation and delivery service.

Notifications are:
1. Filtered by the recipient's notification preferences
2. Persisted in the database
3. Pushed to the user's open websockets (Redis pub/sub → WS bridge)

Browser Web Push delivery is separate (see ``notification_push``) and runs
after the creating transaction commits.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.db.models import Notification, UserSettings
from sfam.redis_client import publish_to_user

logger = logging.getLogger(__name__)

VALID_TYPES = {
    "new_message",
    "post_comment",
    "post_boost",
    "community_invite",
    "payment_verified",
    "event_reminder",
    "follow",
    "mention",
}

DEFAULT_PREFERENCES: dict[str, bool] = {
    "newMessage": True,
    "postComment": True,
    "postBoost": True,
    "communityInvite": True,
    "paymentVerified": True,
    "eventReminder": True,
    "follow": True,
    "mention": True,
    "inApp": True,
    "browserPush": True,
}

PREFERENCE_MAP = {
    "new_message": "newMessage",
    "post_comment": "postComment",
    "post_boost": "postBoost",
    "community_invite": "communityInvite",
    "payment_verified": "paymentVerified",
    "event_reminder": "eventReminder",
    "follow": "follow",
    "mention": "mention",
}


class InvalidNotificationType(ValueError):
    pass


def should_deliver(preferences: dict[str, Any], type_: str) -> bool:
    """Check if a notification should be delivered based on user preferences."""
    if not preferences.get("inApp", True):
        return False
    pref_key = PREFERENCE_MAP.get(type_)
    if pref_key is None:
        return True
    return bool(preferences.get(pref_key, DEFAULT_PREFERENCES.get(pref_key, True)))


async def get_user_notification_preferences(db: AsyncSession, user_id: int) -> dict[str, Any]:
    """Get user's notification preferences, falling back to defaults."""
    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    settings = result.scalar_one_or_none()
    merged: dict[str, Any] = dict(DEFAULT_PREFERENCES)
    if settings and settings.notifications:
        merged.update(settings.notifications)
    return merged


async def update_notification_preferences(
    db: AsyncSession, user_id: int, changes: dict[str, bool]
) -> dict[str, Any]:
    """Merge known preference keys into the stored settings."""
    unknown = set(changes) - set(DEFAULT_PREFERENCES)
    if unknown:
        msg = f"Unknown notification preferences: {', '.join(sorted(unknown))}"
        raise ValueError(msg)

    result = await db.execute(select(UserSettings).where(UserSettings.user_id == user_id))
    settings = result.scalar_one_or_none()
    if settings is None:
        settings = UserSettings(user_id=user_id, notifications={})
        db.add(settings)
    # Reassign so the JSON column is flagged dirty.
    settings.notifications = {**(settings.notifications or {}), **changes}
    settings.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return {**DEFAULT_PREFERENCES, **settings.notifications}


def serialize_notification(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type,
        "title": notification.title,
        "body": notification.body,
        "action_url": notification.action_url,
        "metadata": notification.notification_metadata or {},
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


async def create_notification(
    db: AsyncSession,
    user_id: int,
    type_: str,
    title: str,
    body: str | None = None,
    action_url: str | None = None,
    metadata: dict[str, Any] | None = None,
    redis: Any | None = None,  # noqa: ANN401
) -> Notification | None:
    """Create a notification and push it via WebSocket.

    Returns None when the recipient's preferences suppress this type.
    """
    if type_ not in VALID_TYPES:
        msg = f"Invalid notification type: {type_}. Must be one of {sorted(VALID_TYPES)}"
        raise InvalidNotificationType(msg)

    preferences = await get_user_notification_preferences(db, user_id)
    if not should_deliver(preferences, type_):
        return None

    notification = Notification(
        user_id=user_id,
        type=type_,
        title=title,
        body=body,
        action_url=action_url,
        notification_metadata=metadata or {},
        is_read=False,
        created_at=datetime.now(timezone.utc),
    )
    db.add(notification)
    await db.flush()

    await publish_to_user(redis, user_id, "notification", serialize_notification(notification))
    return notification


async def get_notifications(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 20,
    unread_only: bool = False,
) -> tuple[list[Notification], int]:
    """Get user's notifications (paginated, most recent first)."""
    filters = [Notification.user_id == user_id]
    if unread_only:
        filters.append(Notification.is_read.is_(False))

    total_result = await db.execute(select(func.count()).select_from(Notification).where(*filters))
    total = total_result.scalar_one()

    result = await db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), total


async def get_notification(db: AsyncSession, notification_id: int) -> Notification | None:
    return await db.get(Notification, notification_id)


async def mark_as_read(db: AsyncSession, user_id: int, notification_id: int) -> bool:
    """Mark a single notification as read. Returns True if found."""
    notification = await get_notification(db, notification_id)
    if notification is None or notification.user_id != user_id:
        return False
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        await db.flush()
    return True


async def mark_all_as_read(db: AsyncSession, user_id: int) -> int:
    """Mark all unread notifications as read. Returns count updated."""
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
        .values(is_read=True, read_at=datetime.now(timezone.utc))
    )
    await db.flush()
    return result.rowcount


async def get_unread_count(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(Notification)
        .where(Notification.user_id == user_id, Notification.is_read.is_(False))
    )
    return result.scalar_one()
