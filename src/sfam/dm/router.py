"""Direct-message API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, Response, UploadFile
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.database import get_session
from sfam.db.models import User
from sfam.dependencies import get_optional_redis
from sfam.dm.media import media_type_for, save_media
from sfam.dm.schemas import (
    AcceptResponse,
    ConversationListResponse,
    EnsureThreadRequest,
    EnsureThreadResponse,
    MarkMessagesReadRequest,
    MarkMessagesReadResponse,
    MarkThreadReadResponse,
    MediaUploadResponse,
    MessageListResponse,
    MessageResponse,
    MuteRequest,
    ParticipantResponse,
    SendMessageRequest,
    UnreadCountsResponse,
)
from sfam.dm.service import (
    accept_request,
    append_message,
    delete_message,
    ensure_thread,
    get_unread_counts,
    list_conversations,
    list_messages,
    mark_messages_read,
    mark_thread_read,
    publish_message,
    publish_message_deleted,
    publish_read,
    publish_unread,
    serialize_message,
    serialize_participant,
    serialize_profile,
    serialize_thread,
    set_muted,
)
from sfam.dm.shared import AttachmentInput, DMError, DMForbidden, thread_channel_name
from sfam.social.notification_push import deliver_push

router = APIRouter(prefix="/api/v1/dm", tags=["Direct Messages"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, DMForbidden):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


@router.get("/threads", response_model=ConversationListResponse)
async def conversations(
    limit: int = Query(30, ge=1, le=100),
    search: str | None = Query(None, max_length=100),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    items = await list_conversations(db, user.id, limit, search)
    return {
        "conversations": [
            {
                "thread": serialize_thread(c.thread),
                "participant": serialize_participant(c.participant),
                "other_user": serialize_profile(c.other_user),
                "unread": c.unread,
            }
            for c in items
        ]
    }


@router.post("/threads", response_model=EnsureThreadResponse)
async def open_thread(
    body: EnsureThreadRequest,
    response: Response,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Open the conversation with a peer, creating it on first contact."""
    try:
        result = await ensure_thread(db, user.id, body.peer_user_id)
    except (DMError, LookupError) as e:
        raise _http_error(e) from e
    await db.commit()
    if result.is_new:
        response.status_code = 201
    return {
        "thread": serialize_thread(result.thread),
        "viewer": serialize_participant(result.viewer),
        "peer": serialize_participant(result.peer),
        "peer_profile": serialize_profile(result.peer_user),
        "is_new": result.is_new,
        "ordered_pair": result.ordered_pair,
        "channel": thread_channel_name(result.thread.id),
    }


@router.get("/threads/{thread_id}/messages", response_model=MessageListResponse)
async def messages(
    thread_id: int,
    limit: int = Query(50, ge=1, le=100),
    before: datetime | None = Query(None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        page = await list_messages(db, user.id, thread_id, limit, before)
    except DMForbidden as e:
        raise _http_error(e) from e
    return {
        "messages": [serialize_message(m, m.id in page.read_ids) for m in page.messages],
        "page_info": {"has_more": page.has_more, "next_cursor": page.next_cursor},
    }


@router.post("/threads/{thread_id}/messages", response_model=MessageResponse, status_code=201)
async def send_message(
    thread_id: int,
    body: SendMessageRequest,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    attachments = [
        AttachmentInput(
            storage_path=a.storage_path,
            media_type=a.media_type,
            mime_type=a.mime_type,
            file_size=a.file_size,
            duration_seconds=a.duration_seconds,
        )
        for a in body.attachments
    ]
    try:
        result = await append_message(
            db,
            user,
            thread_id,
            content=body.content,
            attachments=attachments,
            reply_to_message_id=body.reply_to_message_id,
            message_type=body.message_type,
            redis=redis,
        )
    except (DMError, DMForbidden, LookupError) as e:
        raise _http_error(e) from e
    await db.commit()

    await publish_message(db, redis, result)
    if result.notification is not None:
        background_tasks.add_task(deliver_push, result.notification.id)
    return serialize_message(result.message)


@router.delete("/threads/{thread_id}/messages/{message_id}")
async def remove_message(
    thread_id: int,
    message_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    try:
        thread = await delete_message(db, user.id, thread_id, message_id)
    except LookupError as e:
        raise _http_error(e) from e
    await db.commit()
    await publish_message_deleted(db, redis, thread, message_id)
    return {"success": True}


@router.post("/threads/{thread_id}/read", response_model=MarkThreadReadResponse)
async def read_thread(
    thread_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    try:
        last_read_at = await mark_thread_read(db, user.id, thread_id)
    except DMForbidden as e:
        raise _http_error(e) from e
    await db.commit()
    await publish_unread(db, redis, user.id, thread_id)
    return MarkThreadReadResponse(last_read_at=last_read_at)


@router.post("/threads/{thread_id}/messages/read", response_model=MarkMessagesReadResponse)
async def read_messages(
    thread_id: int,
    body: MarkMessagesReadRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: Redis | None = Depends(get_optional_redis),
):
    try:
        result = await mark_messages_read(db, user.id, thread_id, body.message_ids)
    except (DMError, DMForbidden) as e:
        raise _http_error(e) from e
    await db.commit()
    await publish_read(db, redis, user.id, thread_id, result)
    return MarkMessagesReadResponse(count=result.count, last_read_at=result.last_read_at)


@router.post("/threads/{thread_id}/accept", response_model=AcceptResponse)
async def accept(
    thread_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        thread, participant = await accept_request(db, user.id, thread_id)
    except (DMError, DMForbidden, LookupError) as e:
        raise _http_error(e) from e
    await db.commit()
    return {"thread": serialize_thread(thread), "participant": serialize_participant(participant)}


@router.post("/threads/{thread_id}/mute", response_model=ParticipantResponse)
async def mute(
    thread_id: int,
    body: MuteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    try:
        participant = await set_muted(db, user.id, thread_id, body.muted)
    except DMForbidden as e:
        raise _http_error(e) from e
    await db.commit()
    return serialize_participant(participant)


@router.get("/unread", response_model=UnreadCountsResponse)
async def unread_counts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    counts, total = await get_unread_counts(db, user.id)
    return UnreadCountsResponse(threads=counts, total=total)


@router.post("/media", response_model=MediaUploadResponse, status_code=201)
async def upload_media(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
):
    """Store an attachment; the returned path is then sent with a message."""
    content = await file.read()
    try:
        storage_path = await save_media(user.id, file.filename or "", content)
    except DMError as e:
        raise _http_error(e) from e
    return MediaUploadResponse(
        storage_path=storage_path,
        media_type=media_type_for(file.content_type),
        mime_type=file.content_type,
        file_size=len(content),
    )
