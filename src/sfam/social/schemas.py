"""Pydantic schemas for social endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# --- Notifications ---


class NotificationResponse(BaseModel):
    id: int
    type: str
    title: str
    body: str | None = None
    action_url: str | None = None
    metadata: dict[str, Any] = {}
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    page: int
    per_page: int


class UnreadCountResponse(BaseModel):
    unread_count: int


class CreateNotificationRequest(BaseModel):
    user_id: int
    type: str
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1)
    action_url: str | None = Field(None, max_length=512)
    metadata: dict[str, Any] | None = None


class CreateNotificationResponse(BaseModel):
    created: bool
    notification: NotificationResponse | None = None


class NotificationPreferencesResponse(BaseModel):
    preferences: dict[str, bool]


class UpdatePreferencesRequest(BaseModel):
    preferences: dict[str, bool]


# --- Web push ---


class PushKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscribeRequest(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=1024)
    keys: PushKeys


class PushUnsubscribeRequest(BaseModel):
    endpoint: str = Field(..., min_length=1, max_length=1024)


class VapidKeyResponse(BaseModel):
    public_key: str | None


# --- Follows ---


class FollowStatusResponse(BaseModel):
    is_following: bool
    is_followed_by: bool
    is_mutual: bool


class FollowCountsResponse(BaseModel):
    followers: int
    following: int


class FollowUserResponse(BaseModel):
    id: int
    username: str
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None


class FollowListResponse(BaseModel):
    users: list[FollowUserResponse]
    total: int
