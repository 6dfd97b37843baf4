"""Pydantic schemas for direct-message endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class ProfileResponse(BaseModel):
    id: int
    username: str
    first_name: str | None = None
    last_name: str | None = None
    avatar_url: str | None = None


class ThreadResponse(BaseModel):
    id: int
    user_a_id: int
    user_b_id: int
    initiated_by: int | None = None
    request_required: bool
    request_resolved_at: datetime | None = None
    last_message_at: datetime | None = None
    last_message_preview: str | None = None
    last_message_sender_id: int | None = None


class ParticipantResponse(BaseModel):
    user_id: int
    status: str
    last_seen_at: datetime | None = None
    last_read_at: datetime | None = None
    muted_at: datetime | None = None


class ConversationResponse(BaseModel):
    thread: ThreadResponse
    participant: ParticipantResponse
    other_user: ProfileResponse
    unread: int


class ConversationListResponse(BaseModel):
    conversations: list[ConversationResponse]


class EnsureThreadRequest(BaseModel):
    peer_user_id: int


class EnsureThreadResponse(BaseModel):
    thread: ThreadResponse
    viewer: ParticipantResponse
    peer: ParticipantResponse
    peer_profile: ProfileResponse
    is_new: bool
    ordered_pair: tuple[int, int]
    channel: str


class AttachmentRequest(BaseModel):
    storage_path: str = Field(..., min_length=1)
    media_type: str
    mime_type: str | None = None
    file_size: int | None = Field(None, ge=0)
    duration_seconds: int | None = Field(None, ge=0)


class AttachmentResponse(BaseModel):
    id: int
    media_type: str
    storage_path: str
    mime_type: str | None = None
    file_size: int | None = None
    duration_seconds: int | None = None


class SendMessageRequest(BaseModel):
    content: str | None = Field(None, max_length=10_000)
    message_type: Literal["text", "system"] = "text"
    attachments: list[AttachmentRequest] = []
    reply_to_message_id: int | None = None


class MessageResponse(BaseModel):
    id: int
    thread_id: int
    sender_id: int
    content: str | None = None
    message_type: str
    has_attachments: bool
    reply_to_message_id: int | None = None
    attachments: list[AttachmentResponse] = []
    is_read: bool = False
    created_at: datetime


class PageInfo(BaseModel):
    has_more: bool
    next_cursor: datetime | None = None


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    page_info: PageInfo


class MarkMessagesReadRequest(BaseModel):
    message_ids: list[int]


class MarkMessagesReadResponse(BaseModel):
    count: int
    last_read_at: datetime


class MarkThreadReadResponse(BaseModel):
    last_read_at: datetime


class AcceptResponse(BaseModel):
    thread: ThreadResponse
    participant: ParticipantResponse


class MuteRequest(BaseModel):
    muted: bool


class UnreadCountsResponse(BaseModel):
    threads: dict[int, int]
    total: int


class MediaUploadResponse(BaseModel):
    storage_path: str
    media_type: str
    mime_type: str | None = None
    file_size: int
