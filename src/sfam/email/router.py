"""Personal mailbox endpoints: address setup, send, inbox and the inbound webhook."""

from __future__ import annotations

import hmac

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.auth.dependencies import get_current_user
from sfam.config import get_settings
from sfam.database import get_session
from sfam.db.models import User
from sfam.email.mailbox import (
    MailboxDeliveryError,
    MailboxError,
    get_active_address,
    handle_inbound,
    list_mailbox,
    mark_message_read,
    send_from_address,
    setup_address,
)
from sfam.email.schemas import (
    EmailMessageResponse,
    InboundWebhookPayload,
    InboundWebhookResponse,
    MailboxAddressResponse,
    MailboxListResponse,
    MarkEmailReadRequest,
    SendEmailRequest,
    SetupAddressResponse,
)
from sfam.email.service import get_email_service

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/emails", tags=["Mailbox"])


@router.get("/address", response_model=MailboxAddressResponse)
async def my_address(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> MailboxAddressResponse:
    mailbox = await get_active_address(db, user.id)
    if mailbox is None:
        return MailboxAddressResponse()
    return MailboxAddressResponse(email=mailbox.email_address, is_configured=True)


@router.post("/setup", response_model=SetupAddressResponse)
async def setup(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> SetupAddressResponse:
    """Claim the member's personal address; repeated calls return the existing one."""
    try:
        mailbox, created = await setup_address(db, user)
    except MailboxError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    await db.commit()
    message = "Email address created" if created else "Email address already exists"
    return SetupAddressResponse(email=mailbox.email_address, created=created, message=message)


@router.post("/send", response_model=EmailMessageResponse)
async def send(
    body: SendEmailRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> EmailMessageResponse:
    try:
        message = await send_from_address(
            db,
            get_email_service(),
            user,
            to=body.to if isinstance(body.to, str) else list(body.to),
            subject=body.subject,
            html=body.html,
            text=body.text,
        )
    except MailboxDeliveryError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    except MailboxError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    logger.info("mailbox_email_sent", user_id=user.id, message_id=message.id)
    return EmailMessageResponse.model_validate(message)


@router.get("/inbox", response_model=MailboxListResponse)
async def inbox(
    folder: str = Query("all", pattern="^(all|sent|received)$"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> MailboxListResponse:
    messages = await list_mailbox(db, user.id, folder, limit, offset)
    return MailboxListResponse(
        messages=[EmailMessageResponse.model_validate(m) for m in messages],
        count=len(messages),
    )


@router.patch("/inbox/{message_id}", response_model=EmailMessageResponse)
async def update_message(
    message_id: int,
    body: MarkEmailReadRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> EmailMessageResponse:
    try:
        message = await mark_message_read(db, user.id, message_id, body.is_read)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    await db.commit()
    return EmailMessageResponse.model_validate(message)


@router.post("/webhook", response_model=InboundWebhookResponse)
async def inbound_webhook(
    payload: InboundWebhookPayload,
    x_webhook_secret: str | None = Header(None),
    db: AsyncSession = Depends(get_session),
) -> InboundWebhookResponse:
    """Provider callback for received mail. Unknown recipients answer 200 so the provider stops retrying."""
    configured = get_settings().inbound_webhook_secret
    if configured and not hmac.compare_digest(x_webhook_secret or "", configured):
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        result = await handle_inbound(db, payload.model_dump())
    except MailboxError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    await db.commit()
    if not result.success:
        logger.warning("inbound_email_unmatched", detail=result.message)
    return InboundWebhookResponse(success=result.success, message=result.message, message_id=result.message_id)
