"""Pure top-up rules: access gating, reminder cadence, due dates and bonus timers.

Nothing here touches the database so the rules can be unit tested directly
and reused by the API, the websocket layer and the scheduled jobs.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timezone

MSG_LOW_BALANCE = "You need to top up to have sufficient points to access this feature."
MSG_FIRST_TOPUP = "Please complete your first top-up to access this feature."
MSG_OVERDUE = "Your account requires a top-up. Please top up to continue."

REMINDER_DAYS_BEFORE = 3
OVERDUE_REMINDER_INTERVAL_DAYS = 7


@dataclass(frozen=True)
class TopupStatus:
    needs_topup: bool
    reason: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class ReminderDecision:
    should_send: bool
    kind: str | None = None  # "due_today", "overdue" or "upcoming"
    overdue_days: int = 0


def evaluate_topup(
    role: str | None,
    points_balance: int | None,
    next_topup_due_on: date | None,
    today: date,
) -> TopupStatus:
    """Decide whether a member must top up before using gated features.

    ``role`` is None when there is no signed-in user. Admins are never gated.
    """
    if role is None or role == "admin":
        return TopupStatus(needs_topup=False)
    if points_balance is not None and points_balance < 1:
        return TopupStatus(True, "insufficient_balance", MSG_LOW_BALANCE)
    if next_topup_due_on is None:
        return TopupStatus(True, "first_topup", MSG_FIRST_TOPUP)
    if next_topup_due_on < today:
        return TopupStatus(True, "overdue", MSG_OVERDUE)
    return TopupStatus(needs_topup=False)


def reminder_decision(
    next_topup_due_on: date,
    last_reminder_at: datetime | None,
    today: date,
) -> ReminderDecision:
    """Reminder cadence: three days out, on the due date, then weekly once overdue.

    Exactly three days before the due date and on the due date itself a
    reminder goes out if none was sent earlier that day; once overdue the
    reminder repeats every seven days.
    """
    delta_days = (next_topup_due_on - today).days
    if last_reminder_at is None:
        days_since: float = float("inf")
    else:
        if last_reminder_at.tzinfo is not None:
            last_reminder_at = last_reminder_at.astimezone(timezone.utc)
        days_since = (today - last_reminder_at.date()).days

    if delta_days == 0:
        return ReminderDecision(days_since >= 1, "due_today")
    if delta_days < 0:
        return ReminderDecision(days_since >= OVERDUE_REMINDER_INTERVAL_DAYS, "overdue", -delta_days)
    if delta_days == REMINDER_DAYS_BEFORE and days_since >= 1:
        return ReminderDecision(True, "upcoming")
    return ReminderDecision(False)


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic clamped to the end of shorter months."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def bonus_is_active(enabled: bool, points: int, end_time: datetime | None, now: datetime) -> bool:
    if not enabled or points <= 0:
        return False
    return end_time is None or now < end_time


def format_countdown(seconds_remaining: float) -> str:
    """Render a countdown like ``26h 4m 5s``, ``5m 3s`` or ``9s``."""
    if seconds_remaining <= 0:
        return "Expired"
    total = int(seconds_remaining)
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
