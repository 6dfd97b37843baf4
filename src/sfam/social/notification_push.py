"""Browser Web Push fan-out for persisted notifications.

One notification is delivered to every push subscription its recipient has
registered. Subscriptions the push service reports as gone (404/410) are
deleted; other failures are counted and logged. ``pywebpush`` is blocking,
so each send runs in a worker thread and all sends run concurrently.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from pywebpush import WebPushException, webpush
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.config import get_settings
from sfam.database import session_scope
from sfam.db.models import Notification, PushSubscription
from sfam.social.notification_service import get_user_notification_preferences

logger = logging.getLogger(__name__)

GONE_STATUSES = {404, 410}

MSG_NOT_CONFIGURED = "VAPID keys not configured"
MSG_ALREADY_READ = "Notification already read"
MSG_NO_SUBSCRIPTIONS = "No push subscriptions found"
MSG_PUSH_DISABLED = "Browser push disabled by user"
ERR_NOT_FOUND = "Notification not found"


@dataclass
class PushResult:
    success: bool
    sent: int = 0
    total: int = 0
    message: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "sent": self.sent, "total": self.total}
        return {"success": False, "message": self.message or self.error}


def build_payload(notification: Notification) -> str:
    return json.dumps({
        "title": notification.title,
        "body": notification.body,
        "action_url": notification.action_url or "/",
        "id": notification.id,
        "type": notification.type,
    })


def _subscription_info(subscription: PushSubscription) -> dict[str, Any]:
    return {
        "endpoint": subscription.endpoint,
        "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
    }


def _send_one(subscription_info: dict[str, Any], payload: str) -> None:
    settings = get_settings()
    webpush(
        subscription_info=subscription_info,
        data=payload,
        vapid_private_key=settings.vapid_private_key,
        vapid_claims={"sub": settings.vapid_subject},
        ttl=settings.push_ttl_seconds,
    )


async def _deliver(subscription: PushSubscription, payload: str) -> tuple[bool, bool]:
    """Send to one subscription. Returns (delivered, subscription_gone)."""
    try:
        await asyncio.to_thread(_send_one, _subscription_info(subscription), payload)
    except WebPushException as exc:
        status = exc.response.status_code if exc.response is not None else None
        logger.warning("Push to subscription %d failed with status %s", subscription.id, status)
        return False, status in GONE_STATUSES
    except Exception:
        logger.exception("Push to subscription %d failed", subscription.id)
        return False, False
    return True, False


async def send_push_notification(db: AsyncSession, notification_id: int) -> PushResult:
    """Deliver a notification to all of its recipient's browsers.

    The caller commits, since expired subscriptions may have been deleted.
    """
    settings = get_settings()
    if not settings.vapid_private_key or not settings.vapid_public_key:
        return PushResult(success=False, message=MSG_NOT_CONFIGURED)

    notification = await db.get(Notification, notification_id)
    if notification is None:
        return PushResult(success=False, error=ERR_NOT_FOUND)
    if notification.is_read:
        return PushResult(success=False, message=MSG_ALREADY_READ)

    preferences = await get_user_notification_preferences(db, notification.user_id)
    if not preferences.get("browserPush", True):
        return PushResult(success=False, message=MSG_PUSH_DISABLED)

    result = await db.execute(
        select(PushSubscription).where(PushSubscription.user_id == notification.user_id)
    )
    subscriptions = list(result.scalars().all())
    if not subscriptions:
        return PushResult(success=False, message=MSG_NO_SUBSCRIPTIONS)

    payload = build_payload(notification)
    outcomes = await asyncio.gather(*(_deliver(sub, payload) for sub in subscriptions))

    gone_ids = [sub.id for sub, (_, gone) in zip(subscriptions, outcomes) if gone]
    if gone_ids:
        await db.execute(delete(PushSubscription).where(PushSubscription.id.in_(gone_ids)))
        await db.flush()
        logger.info("Removed %d expired push subscriptions for user %d", len(gone_ids), notification.user_id)

    sent = sum(1 for delivered, _ in outcomes if delivered)
    logger.info("Push for notification %d: %d/%d delivered", notification.id, sent, len(subscriptions))
    return PushResult(success=True, sent=sent, total=len(subscriptions))


async def save_subscription(
    db: AsyncSession,
    user_id: int,
    endpoint: str,
    p256dh: str,
    auth: str,
    user_agent: str | None = None,
) -> PushSubscription:
    """Register a browser subscription; an existing endpoint is re-keyed and re-owned."""
    result = await db.execute(select(PushSubscription).where(PushSubscription.endpoint == endpoint))
    subscription = result.scalar_one_or_none()
    if subscription is None:
        subscription = PushSubscription(
            user_id=user_id, endpoint=endpoint, p256dh=p256dh, auth=auth, user_agent=user_agent
        )
        db.add(subscription)
    else:
        subscription.user_id = user_id
        subscription.p256dh = p256dh
        subscription.auth = auth
        subscription.user_agent = user_agent
    await db.flush()
    return subscription


async def remove_subscription(db: AsyncSession, user_id: int, endpoint: str) -> bool:
    result = await db.execute(
        delete(PushSubscription).where(PushSubscription.user_id == user_id, PushSubscription.endpoint == endpoint)
    )
    await db.flush()
    return result.rowcount > 0


async def deliver_push(notification_id: int) -> PushResult | None:
    """Background entry point: own session, commit, never raise."""
    try:
        async with session_scope() as db:
            result = await send_push_notification(db, notification_id)
            await db.commit()
    except Exception:
        logger.exception("Push delivery for notification %d failed", notification_id)
        return None
    return result
