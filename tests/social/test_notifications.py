"""Tests for notifications: creation, inbox, preferences and browser push."""

from unittest.mock import MagicMock

import pytest
from pywebpush import WebPushException
from sqlalchemy import select

from sfam.config import get_settings
from sfam.db.models import Notification, PushSubscription
from sfam.social import notification_push
from sfam.social.notification_push import (
    MSG_ALREADY_READ,
    MSG_NO_SUBSCRIPTIONS,
    MSG_NOT_CONFIGURED,
    MSG_PUSH_DISABLED,
    build_payload,
    save_subscription,
    send_push_notification,
)
from sfam.social.notification_service import (
    InvalidNotificationType,
    create_notification,
    get_notifications,
    get_unread_count,
    mark_all_as_read,
    mark_as_read,
    update_notification_preferences,
)

pytestmark = pytest.mark.asyncio


async def _notify(db, user_id, title="Hello", type_="mention", **kwargs):
    return await create_notification(db, user_id=user_id, type_=type_, title=title, body="body", **kwargs)


class TestNotificationService:
    async def test_create_publishes_event(self, db_session, member, fake_redis):
        notification = await _notify(db_session, member.id, action_url="/posts/1", metadata={"post_id": 1}, redis=fake_redis)
        assert notification.id is not None
        (event,) = fake_redis.events_for(member.id)
        assert event["event"] == "notification"
        assert event["data"]["title"] == "Hello"
        assert event["data"]["metadata"] == {"post_id": 1}

    async def test_invalid_type(self, db_session, member):
        with pytest.raises(InvalidNotificationType):
            await _notify(db_session, member.id, type_="spam")

    async def test_create_without_redis(self, db_session, member):
        assert await _notify(db_session, member.id) is not None

    async def test_pagination_and_unread_filter(self, db_session, member):
        for i in range(5):
            await _notify(db_session, member.id, title=f"n{i}")
        items, total = await get_notifications(db_session, member.id, page=2, per_page=2)
        assert total == 5
        assert len(items) == 2

        first = (await get_notifications(db_session, member.id))[0][0]
        assert await mark_as_read(db_session, member.id, first.id) is True
        unread, unread_total = await get_notifications(db_session, member.id, unread_only=True)
        assert unread_total == 4
        assert first.id not in {n.id for n in unread}

    async def test_mark_as_read_other_user(self, db_session, member, other_member):
        notification = await _notify(db_session, member.id)
        assert await mark_as_read(db_session, other_member.id, notification.id) is False
        assert await mark_as_read(db_session, member.id, 9999) is False

    async def test_mark_all_and_unread_count(self, db_session, member, other_member):
        await _notify(db_session, member.id)
        await _notify(db_session, member.id)
        await _notify(db_session, other_member.id)
        assert await get_unread_count(db_session, member.id) == 2
        assert await mark_all_as_read(db_session, member.id) == 2
        assert await get_unread_count(db_session, member.id) == 0
        assert await get_unread_count(db_session, other_member.id) == 1

    async def test_preferences_merge(self, db_session, member):
        prefs = await update_notification_preferences(db_session, member.id, {"mention": False})
        assert prefs["mention"] is False
        assert prefs["follow"] is True
        assert await _notify(db_session, member.id, type_="mention") is None
        assert await _notify(db_session, member.id, type_="follow") is not None

        prefs = await update_notification_preferences(db_session, member.id, {"inApp": False})
        assert prefs["mention"] is False
        assert await _notify(db_session, member.id, type_="follow") is None

    async def test_unknown_preference_rejected(self, db_session, member):
        with pytest.raises(ValueError, match="Unknown notification preferences"):
            await update_notification_preferences(db_session, member.id, {"carrierPigeon": True})


@pytest.fixture
def vapid(monkeypatch):
    monkeypatch.setenv("SF_VAPID_PUBLIC_KEY", "public-key")
    monkeypatch.setenv("SF_VAPID_PRIVATE_KEY", "private-key")
    get_settings.cache_clear()


@pytest.fixture
def webpush_calls(monkeypatch):
    """Replace pywebpush.webpush; endpoints containing 'gone' answer 410, 'broken' answer 500, 'down' cannot connect."""
    calls = []

    def _fake_webpush(subscription_info, data, **kwargs):
        calls.append({"endpoint": subscription_info["endpoint"], "data": data, **kwargs})
        endpoint = subscription_info["endpoint"]
        if "gone" in endpoint:
            raise WebPushException("gone", response=MagicMock(status_code=410))
        if "broken" in endpoint:
            raise WebPushException("boom", response=MagicMock(status_code=500))
        if "down" in endpoint:
            raise ConnectionError("connection refused")

    monkeypatch.setattr(notification_push, "webpush", _fake_webpush)
    return calls


class TestPush:
    async def test_not_configured(self, db_session, member):
        notification = await _notify(db_session, member.id)
        result = await send_push_notification(db_session, notification.id)
        assert result.as_dict() == {"success": False, "message": MSG_NOT_CONFIGURED}

    async def test_fan_out_and_cleanup(self, db_session, member, vapid, webpush_calls):
        for endpoint in ("https://push.example/ok", "https://push.example/gone", "https://push.example/broken"):
            await save_subscription(db_session, member.id, endpoint, "p256dh", "auth")
        notification = await _notify(db_session, member.id, action_url="/inbox")

        result = await send_push_notification(db_session, notification.id)
        assert result.as_dict() == {"success": True, "sent": 1, "total": 3}
        assert len(webpush_calls) == 3
        assert webpush_calls[0]["vapid_private_key"] == "private-key"
        assert webpush_calls[0]["ttl"] == 86_400

        remaining = (await db_session.execute(select(PushSubscription.endpoint))).scalars().all()
        assert sorted(remaining) == ["https://push.example/broken", "https://push.example/ok"]

    async def test_unreachable_endpoint_does_not_abort_fan_out(self, db_session, member, vapid, webpush_calls):
        for endpoint in ("https://push.example/ok", "https://push.example/gone", "https://push.example/down"):
            await save_subscription(db_session, member.id, endpoint, "p256dh", "auth")
        notification = await _notify(db_session, member.id)

        result = await send_push_notification(db_session, notification.id)

        assert result.as_dict() == {"success": True, "sent": 1, "total": 3}
        remaining = (await db_session.execute(select(PushSubscription.endpoint))).scalars().all()
        assert sorted(remaining) == ["https://push.example/down", "https://push.example/ok"]

    async def test_skip_reasons(self, db_session, member, vapid, webpush_calls):
        notification = await _notify(db_session, member.id)
        assert (await send_push_notification(db_session, notification.id)).message == MSG_NO_SUBSCRIPTIONS
        assert (await send_push_notification(db_session, 9999)).error == "Notification not found"

        await update_notification_preferences(db_session, member.id, {"browserPush": False})
        await save_subscription(db_session, member.id, "https://push.example/ok", "p", "a")
        assert (await send_push_notification(db_session, notification.id)).message == MSG_PUSH_DISABLED

        await mark_as_read(db_session, member.id, notification.id)
        assert (await send_push_notification(db_session, notification.id)).message == MSG_ALREADY_READ
        assert webpush_calls == []

    async def test_subscription_reowned(self, db_session, member, other_member):
        first = await save_subscription(db_session, member.id, "https://push.example/1", "p", "a")
        second = await save_subscription(db_session, other_member.id, "https://push.example/1", "p2", "a2")
        assert first.id == second.id
        assert second.user_id == other_member.id

    async def test_payload(self, db_session, member):
        notification = await _notify(db_session, member.id)
        assert '"action_url": "/"' in build_payload(notification)


class TestNotificationRoutes:
    async def test_inbox_flow(self, client, db_session, member, headers_for):
        await _notify(db_session, member.id, title="one")
        await _notify(db_session, member.id, title="two")
        await db_session.commit()
        headers = headers_for(member)

        resp = await client.get("/api/v1/notifications", headers=headers)
        body = resp.json()
        assert body["total"] == 2
        assert body["page"] == 1
        assert {n["title"] for n in body["notifications"]} == {"one", "two"}

        resp = await client.get("/api/v1/notifications/unread-count", headers=headers)
        assert resp.json() == {"unread_count": 2}

        first_id = body["notifications"][0]["id"]
        resp = await client.post(f"/api/v1/notifications/{first_id}/read", headers=headers)
        assert resp.status_code == 200
        resp = await client.post("/api/v1/notifications/9999/read", headers=headers)
        assert resp.status_code == 404

        resp = await client.post("/api/v1/notifications/read-all", headers=headers)
        assert resp.status_code == 200
        resp = await client.get("/api/v1/notifications/unread-count", headers=headers)
        assert resp.json() == {"unread_count": 0}

    async def test_preferences_routes(self, client, member, headers_for):
        headers = headers_for(member)
        resp = await client.get("/api/v1/notifications/preferences", headers=headers)
        assert resp.json()["preferences"]["newMessage"] is True

        resp = await client.patch(
            "/api/v1/notifications/preferences", json={"preferences": {"newMessage": False}}, headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["preferences"]["newMessage"] is False

        resp = await client.patch(
            "/api/v1/notifications/preferences", json={"preferences": {"bogus": True}}, headers=headers
        )
        assert resp.status_code == 400

    async def test_create_for_self(self, client, member, headers_for, fake_redis):
        resp = await client.post(
            "/api/v1/notifications",
            json={"user_id": member.id, "type": "event_reminder", "title": "Event soon", "body": "Starts at 7"},
            headers=headers_for(member),
        )
        assert resp.status_code == 201
        assert resp.json()["created"] is True
        assert resp.json()["notification"]["type"] == "event_reminder"
        assert len(fake_redis.events_for(member.id)) == 1

    async def test_create_for_others_requires_admin(self, client, member, other_member, admin, headers_for):
        payload = {"user_id": other_member.id, "type": "mention", "title": "Hi", "body": "there"}
        resp = await client.post("/api/v1/notifications", json=payload, headers=headers_for(member))
        assert resp.status_code == 403
        resp = await client.post("/api/v1/notifications", json=payload, headers=headers_for(admin))
        assert resp.status_code == 201

    async def test_create_invalid_type(self, client, member, headers_for):
        resp = await client.post(
            "/api/v1/notifications",
            json={"user_id": member.id, "type": "spam", "title": "x", "body": "y"},
            headers=headers_for(member),
        )
        assert resp.status_code == 400

    async def test_create_suppressed(self, client, member, headers_for):
        headers = headers_for(member)
        await client.patch("/api/v1/notifications/preferences", json={"preferences": {"mention": False}}, headers=headers)
        resp = await client.post(
            "/api/v1/notifications",
            json={"user_id": member.id, "type": "mention", "title": "x", "body": "y"},
            headers=headers,
        )
        assert resp.json() == {"created": False, "notification": None}

    async def test_push_route_not_configured(self, client, db_session, member, other_member, headers_for):
        notification = await _notify(db_session, member.id)
        await db_session.commit()

        resp = await client.post(f"/api/v1/notifications/{notification.id}/push", headers=headers_for(member))
        assert resp.status_code == 500
        assert resp.json()["detail"] == MSG_NOT_CONFIGURED

        resp = await client.post(f"/api/v1/notifications/{notification.id}/push", headers=headers_for(other_member))
        assert resp.status_code == 403
        resp = await client.post("/api/v1/notifications/9999/push", headers=headers_for(member))
        assert resp.status_code == 404

    async def test_subscriptions(self, client, member, headers_for):
        headers = headers_for(member)
        payload = {"endpoint": "https://push.example/abc", "keys": {"p256dh": "p", "auth": "a"}}
        resp = await client.post("/api/v1/push/subscriptions", json=payload, headers=headers)
        assert resp.status_code == 201

        resp = await client.request(
            "DELETE", "/api/v1/push/subscriptions", json={"endpoint": "https://push.example/abc"}, headers=headers
        )
        assert resp.status_code == 200
        resp = await client.request(
            "DELETE", "/api/v1/push/subscriptions", json={"endpoint": "https://push.example/abc"}, headers=headers
        )
        assert resp.status_code == 404

    async def test_vapid_key(self, client):
        resp = await client.get("/api/v1/push/vapid-public-key")
        assert resp.json() == {"public_key": None}
