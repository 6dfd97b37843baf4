"""Tests for the arq scheduled jobs."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from sfam.db.models import UserStorage, Wallet
from sfam.email.service import get_email_service
from sfam.workers.scheduler import WorkerSettings, bill_storage, deliver_push_job, send_topup_reminders
from sfam.workers.settings import WorkerSettings as ExportedSettings

pytestmark = pytest.mark.asyncio


async def test_worker_settings_registers_jobs():
    assert ExportedSettings is WorkerSettings
    names = {f.__name__ for f in WorkerSettings.functions}
    assert names == {"send_topup_reminders", "bill_storage", "deliver_push_job"}
    assert len(WorkerSettings.cron_jobs) == 2


async def test_send_topup_reminders_commits(db_session, member, fake_email):
    today = datetime.now(timezone.utc).date()
    member_id = member.id
    db_session.add(Wallet(user_id=member_id, points_balance=0, next_topup_due_on=today - timedelta(days=1)))
    await db_session.commit()

    outcome = await send_topup_reminders({"email_service": get_email_service()})

    assert outcome["summary"] == {"sent": 1}
    assert "overdue" in fake_email.sent[0]["subject"]
    db_session.expire_all()
    wallet = (await db_session.execute(select(Wallet).where(Wallet.user_id == member_id))).scalar_one()
    assert wallet.last_topup_reminder_at is not None


async def test_bill_storage_commits(db_session, member):
    db_session.add(UserStorage(user_id=member.id, storage_limit_bytes=1024**3, storage_used_bytes=0))
    await db_session.commit()

    summary = await bill_storage({})

    assert summary == {"billed": 0, "free": 1, "skipped": 0, "failed": 0}
    db_session.expire_all()
    storage = (await db_session.execute(select(UserStorage))).scalar_one()
    assert storage.last_billing_date == datetime.now(timezone.utc).date()


async def test_deliver_push_job_without_vapid(db_engine):
    assert await deliver_push_job({}, 12345) is False
