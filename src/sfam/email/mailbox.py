"""Personal mailboxes.

Every member can claim one platform address of the form
``first.lastinitial@<mailbox_domain>``. Outbound mail goes through the
shared EmailService with the member as sender; inbound mail arrives via the
provider's ``email.received`` webhook. Both directions are stored in
``user_email_messages``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import String, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.config import get_settings
from sfam.db.models import User, UserEmail, UserEmailMessage
from sfam.email.service import EmailService, format_sender

logger = logging.getLogger(__name__)

FOLDERS = {"all", "sent", "received"}
DEFAULT_SUBJECT = "(No Subject)"
UNKNOWN_SENDER = "unknown@example.com"

_LOCAL_PART_RE = re.compile(r"^[a-z0-9]+(\.[a-z0-9]+)*$")
_DISALLOWED_RE = re.compile(r"[^a-z0-9.]")
_DOTS_RE = re.compile(r"\.{2,}")
_BRACKETED_RE = re.compile(r"<([^>]+)>")
_BARE_ADDRESS_RE = re.compile(r"([\w.-]+@[\w.-]+\.\w+)")
_NAMED_ADDRESS_RE = re.compile(r"^(.+?)\s*<([^>]+)>$")


class MailboxError(ValueError):
    pass


class MailboxDeliveryError(MailboxError):
    """The provider refused or failed to deliver an outbound message."""


@dataclass(frozen=True)
class InboundResult:
    success: bool
    message: str
    message_id: int | None = None


def _base_local_part(first_name: str | None, last_name: str | None) -> str:
    first = (first_name or "").strip().lower()
    last = (last_name or "").strip().lower()
    raw = f"{first}.{last[:1]}" if last else first
    cleaned = _DOTS_RE.sub(".", _DISALLOWED_RE.sub("", raw)).strip(".")
    return cleaned or "member"


async def _address_taken(db: AsyncSession, address: str) -> bool:
    result = await db.execute(
        select(UserEmail.id).where(func.lower(UserEmail.email_address, type_=String) == address)
    )
    return result.scalar_one_or_none() is not None


async def generate_personal_address(db: AsyncSession, first_name: str | None, last_name: str | None) -> str:
    """Return the first free ``first.l@domain`` address, appending 1, 2, ... on collision."""
    domain = get_settings().mailbox_domain.lower()
    base = _base_local_part(first_name, last_name)
    candidate = f"{base}@{domain}"
    suffix = 0
    while await _address_taken(db, candidate):
        suffix += 1
        candidate = f"{base}{suffix}@{domain}"
    return candidate


def validate_personal_address(address: str) -> bool:
    """True when ``address`` is a well-formed address on the mailbox domain."""
    local, sep, domain = address.strip().lower().rpartition("@")
    if not sep or domain != get_settings().mailbox_domain.lower():
        return False
    return bool(_LOCAL_PART_RE.match(local))


async def get_active_address(db: AsyncSession, user_id: int) -> UserEmail | None:
    result = await db.execute(
        select(UserEmail).where(UserEmail.user_id == user_id, UserEmail.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def setup_address(db: AsyncSession, user: User) -> tuple[UserEmail, bool]:
    """Claim a personal address for ``user``. Returns ``(address, created)``."""
    existing = await get_active_address(db, user.id)
    if existing is not None:
        return existing, False

    address = await generate_personal_address(db, user.first_name, user.last_name)
    if not validate_personal_address(address):
        msg = "Failed to generate email address"
        raise MailboxError(msg)
    record = UserEmail(user_id=user.id, email_address=address, is_active=True)
    db.add(record)
    await db.flush()
    logger.info("Personal address %s assigned to user %d", address, user.id)
    return record, True


def _display_name(user: User) -> str:
    name = " ".join(p for p in (user.first_name, user.last_name) if p)
    return name or "Success Family User"


async def send_from_address(
    db: AsyncSession,
    email_service: EmailService,
    user: User,
    to: str | list[str],
    subject: str,
    html: str | None = None,
    text: str | None = None,
) -> UserEmailMessage:
    """Send from the member's own address and store a copy in the sent folder.

    Raises:
        MailboxError: No active address, missing content, or delivery failed.
    """
    if not html and not text:
        msg = "Missing required fields: to, subject, and html or text"
        raise MailboxError(msg)
    recipients = [to] if isinstance(to, str) else list(to)
    if not recipients or not subject:
        msg = "Missing required fields: to, subject, and html or text"
        raise MailboxError(msg)

    mailbox = await get_active_address(db, user.id)
    if mailbox is None:
        msg = "No active email address found. Please set up your email first."
        raise MailboxError(msg)

    from_name = _display_name(user)
    sender = format_sender(mailbox.email_address, from_name)
    html_body = html or text or ""
    text_body = text or ""
    for recipient in recipients:
        sent = await email_service.send_email(recipient, subject, html_body, text_body, sender=sender)
        if not sent:
            msg = "Failed to send email"
            raise MailboxDeliveryError(msg)

    message = UserEmailMessage(
        user_id=user.id,
        user_email_id=mailbox.id,
        message_type="sent",
        from_email=mailbox.email_address,
        from_name=from_name,
        to_email=", ".join(recipients),
        subject=subject,
        html_content=html,
        text_content=text,
        is_read=True,
    )
    db.add(message)
    await db.flush()
    return message


def _extract_address(value: str) -> str:
    match = _BRACKETED_RE.search(value) or _BARE_ADDRESS_RE.search(value)
    return (match.group(1) if match else value).strip()


def _parse_sender(value: Any) -> tuple[str, str | None]:
    if isinstance(value, list):
        value = value[0] if value else None
    if not value:
        return UNKNOWN_SENDER, None
    named = _NAMED_ADDRESS_RE.match(value)
    if named:
        return named.group(2).strip(), named.group(1).strip() or None
    return _extract_address(value), None


async def handle_inbound(db: AsyncSession, payload: dict[str, Any]) -> InboundResult:
    """Store an ``email.received`` webhook payload in the recipient's inbox.

    Unknown recipients are reported as ``success=False`` rather than raised so
    the provider does not keep retrying.

    Raises:
        MailboxError: The payload is missing its data or recipient.
    """
    event = payload.get("type")
    if event != "email.received":
        return InboundResult(success=True, message="Event ignored")

    data = payload.get("data")
    if not isinstance(data, dict):
        msg = "No data in payload"
        raise MailboxError(msg)

    to = data.get("to")
    recipient = to[0] if isinstance(to, list) and to else to
    if not recipient or not isinstance(recipient, str):
        msg = "No recipient email found"
        raise MailboxError(msg)
    recipient = _extract_address(recipient).lower()

    result = await db.execute(
        select(UserEmail).where(
            func.lower(UserEmail.email_address, type_=String) == recipient,
            UserEmail.is_active.is_(True),
        )
    )
    mailbox = result.scalar_one_or_none()
    if mailbox is None:
        logger.warning("Inbound email for unknown address %s", recipient)
        return InboundResult(success=False, message=f"User not found for this email address: {recipient}")

    from_email, from_name = _parse_sender(data.get("from"))
    message = UserEmailMessage(
        user_id=mailbox.user_id,
        user_email_id=mailbox.id,
        message_type="received",
        from_email=from_email,
        from_name=from_name,
        to_email=mailbox.email_address,
        subject=data.get("subject") or DEFAULT_SUBJECT,
        html_content=data.get("html"),
        text_content=data.get("text"),
        provider_message_id=data.get("email_id") or data.get("id"),
        is_read=False,
    )
    db.add(message)
    await db.flush()
    logger.info("Stored inbound email %d for user %d", message.id, mailbox.user_id)
    return InboundResult(success=True, message="Email received", message_id=message.id)


async def list_mailbox(
    db: AsyncSession,
    user_id: int,
    folder: str = "all",
    limit: int = 50,
    offset: int = 0,
) -> list[UserEmailMessage]:
    if folder not in FOLDERS:
        msg = f"Unknown folder: {folder}"
        raise MailboxError(msg)
    query = select(UserEmailMessage).where(UserEmailMessage.user_id == user_id)
    if folder != "all":
        query = query.where(UserEmailMessage.message_type == folder)
    query = query.order_by(UserEmailMessage.created_at.desc(), UserEmailMessage.id.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def mark_message_read(db: AsyncSession, user_id: int, message_id: int, is_read: bool = True) -> UserEmailMessage:
    result = await db.execute(
        select(UserEmailMessage).where(UserEmailMessage.id == message_id, UserEmailMessage.user_id == user_id)
    )
    message = result.scalar_one_or_none()
    if message is None:
        msg = "Message not found"
        raise LookupError(msg)
    message.is_read = is_read
    await db.flush()
    return message
