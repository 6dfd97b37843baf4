"""Direct-message business logic.

Rules:
- A thread belongs to exactly one ordered user pair (user_a_id < user_b_id)
- Only active participants may send; blocked participants cannot accept
- Unread = messages from the other side newer than the viewer's last_read_at
- Thread metadata (last message time, sender, preview) always mirrors the
  newest remaining message

Service functions flush; routers commit and then call the ``publish_*``
helpers so websocket clients never see uncommitted state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, and_, case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.db.models import (
    DMMessage,
    DMMessageMedia,
    DMMessageRead,
    DMParticipant,
    DMThread,
    Notification,
    User,
    as_utc,
)
from sfam.dm.shared import (
    MESSAGE_TYPES,
    PREVIEW_MAX_LENGTH,
    AttachmentInput,
    DMError,
    DMForbidden,
    build_preview,
    can_user_interact_with_thread,
    order_participants,
    validate_attachments,
)
from sfam.redis_client import publish_to_user
from sfam.richtext.parser import to_plain_text
from sfam.social.notification_service import create_notification

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION_LIMIT = 30
DEFAULT_MESSAGE_LIMIT = 50
MAX_PAGE_SIZE = 100


@dataclass
class EnsureThreadResult:
    thread: DMThread
    viewer: DMParticipant
    peer: DMParticipant
    peer_user: User
    is_new: bool

    @property
    def ordered_pair(self) -> tuple[int, int]:
        return self.thread.user_a_id, self.thread.user_b_id


@dataclass
class Conversation:
    thread: DMThread
    participant: DMParticipant
    other_user: User
    unread: int


@dataclass
class MessagePage:
    messages: list[DMMessage]
    read_ids: set[int]
    has_more: bool
    next_cursor: datetime | None


@dataclass
class AppendResult:
    message: DMMessage
    thread: DMThread
    recipient_id: int
    notification: Notification | None = None


@dataclass
class ReadResult:
    count: int
    last_read_at: datetime
    by_sender: dict[int, list[int]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_profile(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "avatar_url": user.avatar_url,
    }


def serialize_media(media: DMMessageMedia) -> dict[str, Any]:
    return {
        "id": media.id,
        "media_type": media.media_type,
        "storage_path": media.storage_path,
        "mime_type": media.mime_type,
        "file_size": media.file_size,
        "duration_seconds": media.duration_seconds,
    }


def serialize_message(message: DMMessage, is_read: bool = False) -> dict[str, Any]:
    return {
        "id": message.id,
        "thread_id": message.thread_id,
        "sender_id": message.sender_id,
        "content": message.content,
        "message_type": message.message_type,
        "has_attachments": message.has_attachments,
        "reply_to_message_id": message.reply_to_message_id,
        "attachments": [serialize_media(m) for m in message.media],
        "is_read": is_read,
        "created_at": as_utc(message.created_at),
    }


def serialize_thread(thread: DMThread) -> dict[str, Any]:
    return {
        "id": thread.id,
        "user_a_id": thread.user_a_id,
        "user_b_id": thread.user_b_id,
        "initiated_by": thread.initiated_by,
        "request_required": thread.request_required,
        "request_resolved_at": as_utc(thread.request_resolved_at),
        "last_message_at": as_utc(thread.last_message_at),
        "last_message_preview": thread.last_message_preview,
        "last_message_sender_id": thread.last_message_sender_id,
    }


def serialize_participant(participant: DMParticipant) -> dict[str, Any]:
    return {
        "user_id": participant.user_id,
        "status": participant.status,
        "last_seen_at": as_utc(participant.last_seen_at),
        "last_read_at": as_utc(participant.last_read_at),
        "muted_at": as_utc(participant.muted_at),
    }


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_thread(db: AsyncSession, thread_id: int) -> DMThread:
    thread = await db.get(DMThread, thread_id)
    if thread is None:
        msg = "Conversation not found"
        raise LookupError(msg)
    return thread


async def get_participant(db: AsyncSession, thread_id: int, user_id: int) -> DMParticipant | None:
    result = await db.execute(
        select(DMParticipant).where(DMParticipant.thread_id == thread_id, DMParticipant.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def typing_recipient(db: AsyncSession, user_id: int, thread_id: int) -> int | None:
    """The other participant to notify when ``user_id`` types, or None if they may not."""
    participant = await get_participant(db, thread_id, user_id)
    if not can_user_interact_with_thread(participant):
        return None
    thread = await db.get(DMThread, thread_id)
    if thread is None:
        return None
    return thread.other_user_id(user_id)


async def _require_participant(db: AsyncSession, thread_id: int, user_id: int) -> DMParticipant:
    participant = await get_participant(db, thread_id, user_id)
    if participant is None:
        msg = "You do not have access to this conversation"
        raise DMForbidden(msg)
    return participant


async def _find_thread(db: AsyncSession, user_a: int, user_b: int) -> DMThread | None:
    result = await db.execute(select(DMThread).where(DMThread.user_a_id == user_a, DMThread.user_b_id == user_b))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


async def ensure_thread(db: AsyncSession, viewer_id: int, peer_id: int | None) -> EnsureThreadResult:
    """Return the thread for the pair, creating it with two active participants.

    Raises:
        DMError: for an empty or self peer.
        LookupError: when the peer does not exist.
    """
    if not peer_id or peer_id == viewer_id:
        msg = "Invalid peer user"
        raise DMError(msg)
    peer_user = await db.get(User, peer_id)
    if peer_user is None:
        msg = "User not found"
        raise LookupError(msg)

    user_a, user_b = order_participants(viewer_id, peer_id)
    thread = await _find_thread(db, user_a, user_b)
    is_new = False

    if thread is None:
        now = datetime.now(timezone.utc)
        try:
            async with db.begin_nested():
                thread = DMThread(
                    user_a_id=user_a,
                    user_b_id=user_b,
                    initiated_by=viewer_id,
                    request_required=False,
                    created_at=now,
                    updated_at=now,
                )
                db.add(thread)
                await db.flush()
                for uid in (user_a, user_b):
                    db.add(DMParticipant(
                        thread_id=thread.id,
                        user_id=uid,
                        status="active",
                        last_seen_at=now,
                        last_read_at=now,
                        joined_at=now,
                    ))
                await db.flush()
            is_new = True
        except IntegrityError:
            # Lost the unique-pair race to a concurrent creator.
            thread = await _find_thread(db, user_a, user_b)
            if thread is None:
                raise
        logger.info("DM thread %d between %d and %d (new=%s)", thread.id, user_a, user_b, is_new)

    viewer = await _require_participant(db, thread.id, viewer_id)
    peer = await get_participant(db, thread.id, peer_id)
    if peer is None:
        msg = f"Peer participant record missing for thread {thread.id}"
        raise LookupError(msg)
    return EnsureThreadResult(thread=thread, viewer=viewer, peer=peer, peer_user=peer_user, is_new=is_new)


async def get_unread_counts(db: AsyncSession, viewer_id: int) -> tuple[dict[int, int], int]:
    """Per-thread unread counts for the viewer, plus the total."""
    result = await db.execute(
        select(DMParticipant.thread_id, func.count(DMMessage.id))
        .join(
            DMMessage,
            and_(
                DMMessage.thread_id == DMParticipant.thread_id,
                DMMessage.sender_id != viewer_id,
                or_(DMParticipant.last_read_at.is_(None), DMMessage.created_at > DMParticipant.last_read_at),
            ),
        )
        .where(DMParticipant.user_id == viewer_id)
        .group_by(DMParticipant.thread_id)
    )
    counts = {thread_id: n for thread_id, n in result.all()}
    return counts, sum(counts.values())


async def list_conversations(
    db: AsyncSession,
    viewer_id: int,
    limit: int = DEFAULT_CONVERSATION_LIMIT,
    search: str | None = None,
) -> list[Conversation]:
    """Threads the viewer is in, most recent activity first; empty threads last."""
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    other_id = case((DMThread.user_a_id == viewer_id, DMThread.user_b_id), else_=DMThread.user_a_id)
    stmt = (
        select(DMThread, DMParticipant, User)
        .join(DMParticipant, and_(DMParticipant.thread_id == DMThread.id, DMParticipant.user_id == viewer_id))
        .join(User, User.id == other_id)
        .order_by(DMThread.last_message_at.is_(None), DMThread.last_message_at.desc(), DMThread.id.desc())
        .limit(limit)
    )
    term = (search or "").strip().lower()
    if term:
        full_name = func.coalesce(User.first_name, "") + " " + func.coalesce(User.last_name, "")
        stmt = stmt.where(
            or_(
                func.lower(User.username, type_=String).contains(term, autoescape=True),
                func.lower(full_name, type_=String).contains(term, autoescape=True),
            )
        )

    rows = (await db.execute(stmt)).all()
    counts, _ = await get_unread_counts(db, viewer_id)
    return [
        Conversation(thread=thread, participant=participant, other_user=other, unread=counts.get(thread.id, 0))
        for thread, participant, other in rows
    ]


async def accept_request(db: AsyncSession, viewer_id: int, thread_id: int) -> tuple[DMThread, DMParticipant]:
    participant = await _require_participant(db, thread_id, viewer_id)
    if participant.status == "blocked":
        msg = "This conversation cannot be accepted"
        raise DMError(msg)

    now = datetime.now(timezone.utc)
    if participant.status != "active":
        participant.status = "active"
        participant.last_seen_at = now
        participant.last_read_at = now

    thread = await get_thread(db, thread_id)
    if thread.request_required or thread.request_resolved_at is None:
        thread.request_required = False
        thread.request_resolved_at = now
        thread.updated_at = now
    await db.flush()
    return thread, participant


async def set_muted(db: AsyncSession, viewer_id: int, thread_id: int, muted: bool) -> DMParticipant:
    participant = await _require_participant(db, thread_id, viewer_id)
    participant.muted_at = datetime.now(timezone.utc) if muted else None
    await db.flush()
    return participant


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


async def list_messages(
    db: AsyncSession,
    viewer_id: int,
    thread_id: int,
    limit: int = DEFAULT_MESSAGE_LIMIT,
    before: datetime | None = None,
) -> MessagePage:
    """A page of messages, oldest first, ending just before ``before``."""
    await _require_participant(db, thread_id, viewer_id)
    limit = max(1, min(limit, MAX_PAGE_SIZE))

    stmt = select(DMMessage).where(DMMessage.thread_id == thread_id)
    if before is not None:
        stmt = stmt.where(DMMessage.created_at < before)
    result = await db.execute(stmt.order_by(DMMessage.created_at.desc(), DMMessage.id.desc()).limit(limit))
    newest_first = list(result.scalars().all())

    has_more = len(newest_first) == limit
    next_cursor = as_utc(newest_first[-1].created_at) if has_more else None
    messages = list(reversed(newest_first))
    return MessagePage(
        messages=messages,
        read_ids=await _read_by_recipient(db, thread_id, messages),
        has_more=has_more,
        next_cursor=next_cursor,
    )


async def _read_by_recipient(db: AsyncSession, thread_id: int, messages: list[DMMessage]) -> set[int]:
    """Ids of messages the other participant has read, by receipt or by read marker."""
    if not messages:
        return set()
    participants = (
        await db.execute(select(DMParticipant).where(DMParticipant.thread_id == thread_id))
    ).scalars().all()
    last_read = {p.user_id: as_utc(p.last_read_at) for p in participants}

    receipts = await db.execute(
        select(DMMessageRead.message_id, DMMessageRead.user_id).where(
            DMMessageRead.message_id.in_([m.id for m in messages])
        )
    )
    receipt_pairs = set(receipts.all())

    read: set[int] = set()
    for message in messages:
        for reader_id, marker in last_read.items():
            if reader_id == message.sender_id:
                continue
            if (message.id, reader_id) in receipt_pairs or (
                marker is not None and as_utc(message.created_at) <= marker
            ):
                read.add(message.id)
    return read


async def append_message(
    db: AsyncSession,
    viewer: User,
    thread_id: int,
    content: str | None = None,
    attachments: list[AttachmentInput] | None = None,
    reply_to_message_id: int | None = None,
    message_type: str = "text",
    redis: Any | None = None,  # noqa: ANN401
) -> AppendResult:
    """Store a message and update thread and sender state in one transaction.

    Raises:
        DMForbidden: when the viewer is not an active participant.
        DMError: for empty messages, bad attachments or a foreign reply target.
    """
    participant = await get_participant(db, thread_id, viewer.id)
    if participant is None:
        msg = "You cannot send messages in this conversation"
        raise DMForbidden(msg)
    if participant.status != "active":
        msg = "Conversation request must be accepted before sending messages"
        raise DMForbidden(msg)

    attachments = attachments or []
    validate_attachments(attachments)
    text = (content or "").strip() or None
    if text is None and not attachments:
        msg = "A message requires content or at least one attachment"
        raise DMError(msg)
    if message_type not in MESSAGE_TYPES:
        msg = f"Invalid message type: {message_type}"
        raise DMError(msg)

    if reply_to_message_id is not None:
        target = await db.get(DMMessage, reply_to_message_id)
        if target is None or target.thread_id != thread_id:
            msg = "Reply target is not part of this conversation"
            raise DMError(msg)

    now = datetime.now(timezone.utc)
    message = DMMessage(
        thread_id=thread_id,
        sender_id=viewer.id,
        content=text,
        message_type=message_type,
        has_attachments=bool(attachments),
        reply_to_message_id=reply_to_message_id,
        created_at=now,
        media=[
            DMMessageMedia(
                media_type=a.media_type,
                storage_path=a.storage_path,
                mime_type=a.mime_type,
                file_size=a.file_size,
                duration_seconds=a.duration_seconds,
                created_at=now,
            )
            for a in attachments
        ],
    )
    db.add(message)

    participant.last_seen_at = now
    participant.last_read_at = now

    thread = await get_thread(db, thread_id)
    thread.last_message_at = now
    thread.last_message_sender_id = viewer.id
    thread.last_message_preview = build_preview(text, message_type, attachments)
    thread.updated_at = now
    await db.flush()

    recipient_id = thread.other_user_id(viewer.id)
    recipient = await get_participant(db, thread_id, recipient_id)
    notification = None
    if recipient is not None and recipient.muted_at is None:
        body = to_plain_text(text)[:PREVIEW_MAX_LENGTH] if text else thread.last_message_preview
        notification = await create_notification(
            db,
            user_id=recipient_id,
            type_="new_message",
            title=f"New message from {viewer.full_name or viewer.username}",
            body=body,
            action_url=f"/messages?thread={thread_id}",
            metadata={"thread_id": thread_id, "message_id": message.id, "sender_id": viewer.id},
            redis=redis,
        )

    return AppendResult(message=message, thread=thread, recipient_id=recipient_id, notification=notification)


async def _refresh_thread_summary(db: AsyncSession, thread: DMThread) -> None:
    result = await db.execute(
        select(DMMessage)
        .where(DMMessage.thread_id == thread.id)
        .order_by(DMMessage.created_at.desc(), DMMessage.id.desc())
        .limit(1)
    )
    newest = result.scalar_one_or_none()
    if newest is None:
        thread.last_message_at = None
        thread.last_message_sender_id = None
        thread.last_message_preview = None
    else:
        thread.last_message_at = newest.created_at
        thread.last_message_sender_id = newest.sender_id
        thread.last_message_preview = build_preview(
            newest.content,
            newest.message_type,
            [AttachmentInput(m.storage_path, m.media_type) for m in newest.media],
        )
    thread.updated_at = datetime.now(timezone.utc)


async def delete_message(db: AsyncSession, viewer_id: int, thread_id: int, message_id: int) -> DMThread:
    """Delete the viewer's own message and recompute the thread summary."""
    result = await db.execute(
        select(DMMessage).where(
            DMMessage.id == message_id,
            DMMessage.thread_id == thread_id,
            DMMessage.sender_id == viewer_id,
        )
    )
    message = result.scalar_one_or_none()
    if message is None:
        msg = "Message not found or unauthorized"
        raise LookupError(msg)

    await db.execute(delete(DMMessageRead).where(DMMessageRead.message_id == message_id))
    await db.delete(message)
    await db.flush()

    thread = await get_thread(db, thread_id)
    await _refresh_thread_summary(db, thread)
    await db.flush()
    return thread


async def mark_thread_read(db: AsyncSession, viewer_id: int, thread_id: int) -> datetime:
    participant = await _require_participant(db, thread_id, viewer_id)
    now = datetime.now(timezone.utc)
    participant.last_seen_at = now
    participant.last_read_at = now
    await db.flush()
    return now


async def mark_messages_read(
    db: AsyncSession, viewer_id: int, thread_id: int, message_ids: list[int]
) -> ReadResult:
    """Write receipts for messages from the other side that have none yet."""
    if not message_ids:
        msg = "message_ids must not be empty"
        raise DMError(msg)
    participant = await _require_participant(db, thread_id, viewer_id)

    result = await db.execute(
        select(DMMessage.id, DMMessage.sender_id).where(
            DMMessage.id.in_(message_ids),
            DMMessage.thread_id == thread_id,
            DMMessage.sender_id != viewer_id,
        )
    )
    candidates = dict(result.all())
    existing = await db.execute(
        select(DMMessageRead.message_id).where(
            DMMessageRead.user_id == viewer_id, DMMessageRead.message_id.in_(list(candidates))
        )
    )
    already_read = set(existing.scalars().all())

    now = datetime.now(timezone.utc)
    by_sender: dict[int, list[int]] = {}
    for message_id, sender_id in candidates.items():
        if message_id in already_read:
            continue
        db.add(DMMessageRead(message_id=message_id, user_id=viewer_id, read_at=now))
        by_sender.setdefault(sender_id, []).append(message_id)

    current = as_utc(participant.last_read_at)
    if current is None or current < now:
        participant.last_read_at = now
    participant.last_seen_at = now
    await db.flush()

    count = sum(len(ids) for ids in by_sender.values())
    return ReadResult(count=count, last_read_at=as_utc(participant.last_read_at), by_sender=by_sender)


# ---------------------------------------------------------------------------
# Realtime (call after commit)
# ---------------------------------------------------------------------------


async def publish_unread(db: AsyncSession, redis: Any, user_id: int, thread_id: int) -> None:  # noqa: ANN401
    counts, total = await get_unread_counts(db, user_id)
    await publish_to_user(
        redis, user_id, "dm_unread", {"thread_id": thread_id, "unread": counts.get(thread_id, 0), "total": total}
    )


async def publish_message(db: AsyncSession, redis: Any, result: AppendResult) -> None:  # noqa: ANN401
    payload = serialize_message(result.message)
    for user_id in (result.thread.user_a_id, result.thread.user_b_id):
        await publish_to_user(redis, user_id, "dm_message", payload)
    await publish_unread(db, redis, result.recipient_id, result.thread.id)


async def publish_message_deleted(
    db: AsyncSession, redis: Any, thread: DMThread, message_id: int  # noqa: ANN401
) -> None:
    data = {"thread_id": thread.id, "message_id": message_id, "thread": serialize_thread(thread)}
    for user_id in (thread.user_a_id, thread.user_b_id):
        await publish_to_user(redis, user_id, "dm_message_deleted", data)
        await publish_unread(db, redis, user_id, thread.id)


async def publish_read(db: AsyncSession, redis: Any, viewer_id: int, thread_id: int, result: ReadResult) -> None:  # noqa: ANN401
    for sender_id, ids in result.by_sender.items():
        await publish_to_user(
            redis, sender_id, "dm_read", {"thread_id": thread_id, "reader_id": viewer_id, "message_ids": ids}
        )
    await publish_unread(db, redis, viewer_id, thread_id)
