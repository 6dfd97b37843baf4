"""Notification API endpoints: inbox, preferences, creation and Web Push."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.config import get_settings
from sfam.database import get_session
from sfam.db.models import Notification, User
from sfam.dependencies import get_optional_redis
from sfam.social.notification_push import (
    ERR_NOT_FOUND,
    MSG_NOT_CONFIGURED,
    deliver_push,
    remove_subscription,
    save_subscription,
    send_push_notification,
)
from sfam.social.notification_service import (
    InvalidNotificationType,
    create_notification,
    get_notifications,
    get_unread_count,
    get_user_notification_preferences,
    mark_all_as_read,
    mark_as_read,
    update_notification_preferences,
)
from sfam.social.schemas import (
    CreateNotificationRequest,
    CreateNotificationResponse,
    NotificationListResponse,
    NotificationPreferencesResponse,
    NotificationResponse,
    PushSubscribeRequest,
    PushUnsubscribeRequest,
    UnreadCountResponse,
    UpdatePreferencesRequest,
    VapidKeyResponse,
)

router = APIRouter(prefix="/api/v1", tags=["Notifications"])


def _to_response(n: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=n.id,
        type=n.type,
        title=n.title,
        body=n.body,
        action_url=n.action_url,
        metadata=n.notification_metadata or {},
        is_read=n.is_read,
        read_at=n.read_at,
        created_at=n.created_at,
    )


@router.get("/notifications", response_model=NotificationListResponse)
async def list_notifications(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """List user's notifications (paginated)."""
    notifications, total = await get_notifications(db, user.id, page, per_page, unread_only)
    return NotificationListResponse(
        notifications=[_to_response(n) for n in notifications],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.post("/notifications/{notification_id}/read", status_code=200)
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Mark a notification as read."""
    found = await mark_as_read(db, user.id, notification_id)
    if not found:
        raise HTTPException(status_code=404, detail="Notification not found")
    await db.commit()
    return {"detail": "Notification marked as read"}


@router.post("/notifications/read-all", status_code=200)
async def mark_all_read(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Mark all notifications as read."""
    count = await mark_all_as_read(db, user.id)
    await db.commit()
    return {"detail": f"Marked {count} notifications as read"}


@router.get("/notifications/unread-count", response_model=UnreadCountResponse)
async def get_unread_notification_count(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    count = await get_unread_count(db, user.id)
    return UnreadCountResponse(unread_count=count)


@router.get("/notifications/preferences", response_model=NotificationPreferencesResponse)
async def get_preferences(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    preferences = await get_user_notification_preferences(db, user.id)
    return NotificationPreferencesResponse(preferences=preferences)


@router.patch("/notifications/preferences", response_model=NotificationPreferencesResponse)
async def patch_preferences(
    body: UpdatePreferencesRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        preferences = await update_notification_preferences(db, user.id, body.preferences)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    return NotificationPreferencesResponse(preferences=preferences)


@router.post("/notifications", response_model=CreateNotificationResponse, status_code=201)
async def create_notification_endpoint(
    body: CreateNotificationRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    """Create a notification for yourself, or for anyone as an admin.

    Browser push runs after the response, once the row is committed.
    """
    if body.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot notify other users")
    try:
        notification = await create_notification(
            db,
            user_id=body.user_id,
            type_=body.type,
            title=body.title,
            body=body.body,
            action_url=body.action_url,
            metadata=body.metadata,
            redis=redis,
        )
    except InvalidNotificationType as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()

    if notification is None:
        return CreateNotificationResponse(created=False)
    background_tasks.add_task(deliver_push, notification.id)
    return CreateNotificationResponse(created=True, notification=_to_response(notification))


@router.post("/notifications/{notification_id}/push")
async def push_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Deliver one notification to every registered browser of its recipient."""
    notification = await db.get(Notification, notification_id)
    if notification is None:
        raise HTTPException(status_code=404, detail=ERR_NOT_FOUND)
    if notification.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Cannot push another user's notification")

    result = await send_push_notification(db, notification_id)
    await db.commit()
    if result.error == ERR_NOT_FOUND:
        raise HTTPException(status_code=404, detail=ERR_NOT_FOUND)
    if result.message == MSG_NOT_CONFIGURED:
        raise HTTPException(status_code=500, detail=MSG_NOT_CONFIGURED)
    return result.as_dict()


@router.get("/push/vapid-public-key", response_model=VapidKeyResponse)
async def vapid_public_key():
    return VapidKeyResponse(public_key=get_settings().vapid_public_key or None)


@router.post("/push/subscriptions", status_code=201)
async def subscribe(
    body: PushSubscribeRequest,
    user_agent: str | None = Header(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    subscription = await save_subscription(
        db, user.id, body.endpoint, body.keys.p256dh, body.keys.auth, user_agent
    )
    await db.commit()
    return {"id": subscription.id, "endpoint": subscription.endpoint}


@router.delete("/push/subscriptions", status_code=200)
async def unsubscribe(
    body: PushUnsubscribeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    removed = await remove_subscription(db, user.id, body.endpoint)
    if not removed:
        raise HTTPException(status_code=404, detail="Subscription not found")
    await db.commit()
    return {"detail": "Subscription removed"}
