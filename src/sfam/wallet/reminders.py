"""Scheduled top-up reminder emails."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sfam.db.models import User, Wallet
from sfam.email.service import EmailService
from sfam.wallet.service import get_platform_settings
from sfam.wallet.topup import reminder_decision

logger = logging.getLogger(__name__)


def reminder_display_name(user: User) -> str:
    if user.first_name and user.last_name:
        return f"{user.first_name} {user.last_name}"
    return user.username or "there"


async def run_topup_reminders(
    db: AsyncSession,
    email_service: EmailService,
    today: date | None = None,
) -> dict[str, Any]:
    """Email every member whose top-up is coming due or overdue.

    Each wallet is handled independently: a failed send is recorded and the
    loop moves on. ``last_topup_reminder_at`` is stamped only after a
    successful send. The caller commits.
    """
    today = today or datetime.now(timezone.utc).date()
    platform = await get_platform_settings(db)
    minimum = Decimal(platform.mandatory_topup_amount)
    if minimum <= 0:
        msg = "Invalid mandatory top-up amount in platform settings"
        raise ValueError(msg)

    rows = (
        await db.execute(
            select(Wallet, User)
            .join(User, User.id == Wallet.user_id)
            .where(Wallet.next_topup_due_on.is_not(None))
            .order_by(Wallet.user_id)
        )
    ).all()

    results: list[dict[str, Any]] = []
    for wallet, user in rows:
        decision = reminder_decision(wallet.next_topup_due_on, wallet.last_topup_reminder_at, today)
        if not decision.should_send:
            results.append({"user_id": user.id, "status": "skipped", "reason": "no_reminder_needed"})
            continue
        if not user.email:
            results.append({"user_id": user.id, "status": "skipped", "reason": "missing_email"})
            continue

        sent = await email_service.send_template(
            to=user.email,
            template_name="wallet_topup_reminder",
            context={
                "name": reminder_display_name(user),
                "amount": float(minimum),
                "due_date": wallet.next_topup_due_on.isoformat(),
                "overdue_days": decision.overdue_days,
            },
        )
        if not sent:
            results.append({"user_id": user.id, "status": "error", "reason": "send_failed"})
            continue

        wallet.last_topup_reminder_at = datetime.now(timezone.utc)
        results.append({"user_id": user.id, "status": "sent", "kind": decision.kind})

    await db.flush()
    summary = dict(Counter(item["status"] for item in results))
    logger.info("Top-up reminders for %s: %s", today.isoformat(), summary)
    return {"summary": summary, "results": results, "processed": len(rows), "date": today.isoformat()}
