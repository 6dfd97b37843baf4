"""Pydantic schemas for personal mailbox endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class MailboxAddressResponse(BaseModel):
    email: str | None = None
    is_configured: bool = False


class SetupAddressResponse(BaseModel):
    email: str
    created: bool
    message: str


class SendEmailRequest(BaseModel):
    to: EmailStr | list[EmailStr]
    subject: str = Field(..., min_length=1, max_length=998)
    html: str | None = None
    text: str | None = None


class EmailMessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message_type: Literal["sent", "received"]
    from_email: str
    from_name: str | None = None
    to_email: str
    subject: str
    html_content: str | None = None
    text_content: str | None = None
    is_read: bool
    created_at: datetime


class MailboxListResponse(BaseModel):
    messages: list[EmailMessageResponse]
    count: int


class MarkEmailReadRequest(BaseModel):
    is_read: bool = True


class InboundWebhookResponse(BaseModel):
    success: bool
    message: str
    message_id: int | None = None


class InboundWebhookPayload(BaseModel):
    type: str
    created_at: str | None = None
    data: dict[str, Any] | None = None
