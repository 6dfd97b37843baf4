"""Tests for the wallet: points movements, top-up verification, reminders and the API."""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from sfam.db.models import RevenueLedger, Transaction, Wallet
from sfam.email.service import get_email_service
from sfam.wallet.reminders import reminder_display_name, run_topup_reminders
from sfam.wallet.service import (
    InsufficientPointsError,
    TopupError,
    WalletError,
    apply_topup,
    get_balance_total,
    get_bonus_status,
    get_or_create_wallet,
    get_platform_settings,
    get_topup_status,
    list_pending_topups,
    list_transactions,
    reject_topup,
    spend_points,
    submit_receipt,
)

pytestmark = pytest.mark.asyncio

CRON = {"X-Cron-Secret": "cron-test-secret"}


async def _pricing(db, buy="1", value="1", **kwargs):
    platform = await get_platform_settings(db)
    platform.buy_price_per_point = Decimal(buy)
    platform.user_value_per_point = Decimal(value)
    for key, val in kwargs.items():
        setattr(platform, key, val)
    await db.flush()
    return platform


async def _fund(db, user_id, points):
    wallet = await get_or_create_wallet(db, user_id)
    wallet.points_balance = points
    db.add(Transaction(user_id=user_id, type="adjustment", status="verified", points_delta=points))
    await db.flush()
    return wallet


def _receipt(name="receipt.png", content=b"\x89PNG fake", mime="image/png"):
    return {"file": (name, content, mime)}


class TestPlatformSettings:
    async def test_created_with_defaults(self, db_session):
        platform = await get_platform_settings(db_session)
        assert platform.id == 1
        assert Decimal(platform.mandatory_topup_amount) == Decimal("150")
        assert platform.storage_purchase_price_per_gb == 10
        assert platform.storage_monthly_cost_per_gb == 4
        assert await get_platform_settings(db_session) is platform

    async def test_bonus_status(self, db_session):
        now = datetime(2026, 5, 1, 12, tzinfo=timezone.utc)
        platform = await _pricing(
            db_session,
            topup_bonus_enabled=True,
            topup_bonus_points=20,
            topup_bonus_end_time=now + timedelta(hours=2, minutes=3, seconds=4),
        )
        status = get_bonus_status(platform, now)
        assert status["active"] is True
        assert status["bonus_points"] == 20
        assert status["seconds_remaining"] == 7384
        assert status["countdown"] == "2h 3m 4s"

        status = get_bonus_status(platform, now + timedelta(days=1))
        assert status["active"] is False
        assert status["seconds_remaining"] == 0
        assert status["countdown"] == "Expired"


class TestSpendPoints:
    async def test_deducts_and_records(self, db_session, member):
        await _fund(db_session, member.id, 50)
        wallet, txn = await spend_points(db_session, member.id, 20, "storage_purchase", "Bought 2 GB")
        assert wallet.points_balance == 30
        assert txn.points_delta == -20
        assert txn.status == "verified"
        assert await get_balance_total(db_session, member.id) == 30

    async def test_insufficient(self, db_session, member):
        await _fund(db_session, member.id, 5)
        with pytest.raises(InsufficientPointsError) as exc:
            await spend_points(db_session, member.id, 20, "storage_purchase", "Bought 2 GB")
        assert exc.value.required == 20
        assert exc.value.available == 5
        assert str(exc.value) == "Insufficient points. Required: 20, Available: 5"

    async def test_rejects_non_positive(self, db_session, member):
        with pytest.raises(WalletError):
            await spend_points(db_session, member.id, 0, "storage_purchase", "nothing")


class TestTopups:
    async def test_submit_enforces_minimum(self, db_session, member):
        with pytest.raises(TopupError, match="Minimum top-up amount is TTD \\$150.00"):
            await submit_receipt(db_session, member.id, Decimal("149.99"), "rbc", "1/r.png")
        with pytest.raises(TopupError, match="bank account"):
            await submit_receipt(db_session, member.id, Decimal("150"), "", "1/r.png")

    async def test_submit_creates_pending(self, db_session, member):
        txn = await submit_receipt(db_session, member.id, Decimal("200.456"), "rbc", "1/r.png")
        assert txn.status == "pending"
        assert txn.points_delta == 0
        assert txn.amount_ttd == Decimal("200.46")
        assert [t.id for t in await list_pending_topups(db_session)] == [txn.id]

    async def test_apply_credits_floor_points_and_books_profit(self, db_session, member, admin):
        await _pricing(db_session, buy="1.5", value="1.2")
        txn = await submit_receipt(db_session, member.id, Decimal("151"), "rbc", "1/r.png")
        now = datetime(2026, 1, 31, 9, tzinfo=timezone.utc)

        result = await apply_topup(db_session, txn.id, verified_by=admin.id, now=now)

        assert result.points_before == 0
        assert result.points_credited == 100
        assert result.points_after == 100
        assert result.bonus_points == 0
        assert txn.status == "verified"
        assert txn.points_delta == 100
        assert txn.verified_by == admin.id

        wallet = await get_or_create_wallet(db_session, member.id)
        assert wallet.next_topup_due_on == date(2026, 2, 28)
        assert await get_balance_total(db_session, member.id) == wallet.points_balance

        ledger = (await db_session.execute(select(RevenueLedger))).scalars().all()
        assert [(r.source, Decimal(r.amount_ttd)) for r in ledger] == [("topup_profit", Decimal("30.00"))]

    async def test_apply_adds_active_bonus(self, db_session, member):
        now = datetime(2026, 3, 1, tzinfo=timezone.utc)
        await _pricing(
            db_session,
            value="0.8",
            topup_bonus_enabled=True,
            topup_bonus_points=25,
            topup_bonus_end_time=now + timedelta(days=1),
        )
        txn = await submit_receipt(db_session, member.id, Decimal("150"), "rbc", "1/r.png")

        result = await apply_topup(db_session, txn.id, now=now)

        assert result.bonus_points == 25
        assert result.points_credited == 175
        assert result.points_after == 175
        assert await get_balance_total(db_session, member.id) == 175

        ledger = (await db_session.execute(select(RevenueLedger).order_by(RevenueLedger.id))).scalars().all()
        assert [(r.source, Decimal(r.amount_ttd)) for r in ledger] == [
            ("topup_profit", Decimal("30.00")),
            ("topup_bonus_expense", Decimal("-20.00")),
        ]

    async def test_apply_twice_fails(self, db_session, member):
        txn = await submit_receipt(db_session, member.id, Decimal("150"), "rbc", "1/r.png")
        await apply_topup(db_session, txn.id)
        with pytest.raises(TopupError, match="already verified"):
            await apply_topup(db_session, txn.id)

    async def test_apply_unknown_transaction(self, db_session):
        with pytest.raises(LookupError):
            await apply_topup(db_session, 999)

    async def test_apply_rejects_non_topup(self, db_session, member):
        await _fund(db_session, member.id, 10)
        _, spend = await spend_points(db_session, member.id, 5, "storage_purchase", "x")
        with pytest.raises(TopupError, match="Only top-up"):
            await apply_topup(db_session, spend.id)

    async def test_apply_with_price_above_amount(self, db_session, member):
        await _pricing(db_session, buy="200")
        txn = await submit_receipt(db_session, member.id, Decimal("150"), "rbc", "1/r.png")
        with pytest.raises(TopupError, match="too low"):
            await apply_topup(db_session, txn.id)

    async def test_reject(self, db_session, member, admin):
        txn = await submit_receipt(db_session, member.id, Decimal("150"), "rbc", "1/r.png")
        rejected = await reject_topup(db_session, txn.id, "Blurry receipt", rejected_by=admin.id)
        assert rejected.status == "rejected"
        assert rejected.rejection_reason == "Blurry receipt"
        with pytest.raises(TopupError):
            await reject_topup(db_session, txn.id, "again")
        assert await list_pending_topups(db_session) == []

    async def test_transactions_newest_first(self, db_session, member):
        await _fund(db_session, member.id, 30)
        await spend_points(db_session, member.id, 10, "storage_purchase", "first")
        await spend_points(db_session, member.id, 10, "storage_billing", "second")
        txns = await list_transactions(db_session, member.id, limit=2)
        assert [t.description for t in txns] == ["second", "first"]


class TestTopupStatus:
    async def test_states(self, db_session, member, admin):
        today = date(2026, 4, 10)
        status = await get_topup_status(db_session, member, today)
        assert (status.needs_topup, status.reason) == (True, "insufficient_balance")

        wallet = await _fund(db_session, member.id, 10)
        status = await get_topup_status(db_session, member, today)
        assert status.reason == "first_topup"

        wallet.next_topup_due_on = date(2026, 4, 9)
        status = await get_topup_status(db_session, member, today)
        assert status.reason == "overdue"

        wallet.next_topup_due_on = today
        assert (await get_topup_status(db_session, member, today)).needs_topup is False
        assert (await get_topup_status(db_session, admin, today)).needs_topup is False


class TestReminders:
    async def test_display_name(self, member, make_user):
        assert reminder_display_name(member) == "Alice Smith"
        nameless = await make_user("x@example.com", "xavier", first_name=None)
        assert reminder_display_name(nameless) == "xavier"

    async def test_run(self, db_session, member, other_member, make_user, fake_email):
        today = date(2026, 6, 10)
        carol = await make_user("carol@example.com", "carol", first_name="Carol", last_name="King")
        db_session.add_all([
            Wallet(user_id=member.id, points_balance=5, next_topup_due_on=today + timedelta(days=3)),
            Wallet(user_id=other_member.id, points_balance=5, next_topup_due_on=today + timedelta(days=10)),
            Wallet(
                user_id=carol.id,
                points_balance=5,
                next_topup_due_on=today - timedelta(days=9),
                last_topup_reminder_at=datetime(2026, 6, 8, tzinfo=timezone.utc),
            ),
        ])
        await db_session.flush()

        outcome = await run_topup_reminders(db_session, get_email_service(), today)

        assert outcome["summary"] == {"sent": 1, "skipped": 2}
        assert outcome["processed"] == 3
        assert outcome["date"] == "2026-06-10"
        assert outcome["results"][0] == {"user_id": member.id, "status": "sent", "kind": "upcoming"}
        assert [m["to"] for m in fake_email.sent] == ["alice@example.com"]
        assert "2026-06-13" in fake_email.sent[0]["subject"]

        wallet = await get_or_create_wallet(db_session, member.id)
        assert wallet.last_topup_reminder_at is not None

    async def test_failed_send_not_stamped(self, db_session, member, fake_email):
        today = date(2026, 6, 10)
        db_session.add(Wallet(user_id=member.id, points_balance=0, next_topup_due_on=today))
        await db_session.flush()
        fake_email.succeed = False

        outcome = await run_topup_reminders(db_session, get_email_service(), today)

        assert outcome["results"] == [{"user_id": member.id, "status": "error", "reason": "send_failed"}]
        wallet = await get_or_create_wallet(db_session, member.id)
        assert wallet.last_topup_reminder_at is None

    async def test_invalid_minimum(self, db_session, fake_email):
        await _pricing(db_session, mandatory_topup_amount=Decimal("0"))
        with pytest.raises(ValueError, match="mandatory top-up"):
            await run_topup_reminders(db_session, get_email_service())


class TestWalletRoutes:
    async def test_wallet_and_status_for_new_member(self, client, member, headers_for):
        resp = await client.get("/api/v1/wallet", headers=headers_for(member))
        assert resp.status_code == 200
        assert resp.json()["points_balance"] == 0
        assert resp.json()["next_topup_due_on"] is None

        resp = await client.get("/api/v1/wallet/topup-status", headers=headers_for(member))
        assert resp.json()["needs_topup"] is True
        assert resp.json()["reason"] == "insufficient_balance"

        resp = await client.get("/api/v1/wallet/bonus", headers=headers_for(member))
        assert resp.json()["active"] is False

    async def test_receipt_upload_and_verify(self, client, member, admin, headers_for, fake_email, fake_redis, tmp_path):
        resp = await client.post(
            "/api/v1/wallet/receipts",
            data={"amount_ttd": "150", "bank_account_id": "rbc"},
            files=_receipt(),
            headers=headers_for(member),
        )
        assert resp.status_code == 201
        txn = resp.json()
        assert txn["status"] == "pending"
        stored = list((tmp_path / "uploads" / "receipts" / str(member.id)).iterdir())
        assert len(stored) == 1
        assert stored[0].suffix == ".png"

        resp = await client.get("/api/v1/admin/topups/pending", headers=headers_for(admin))
        assert [t["id"] for t in resp.json()["transactions"]] == [txn["id"]]

        resp = await client.post(f"/api/v1/admin/topups/{txn['id']}/verify", headers=headers_for(admin))
        assert resp.status_code == 200
        assert resp.json()["points_credited"] == 150
        assert resp.json()["points_after"] == 150

        events = fake_redis.events_for(member.id)
        assert events[0]["event"] == "notification"
        assert events[0]["data"]["type"] == "payment_verified"
        assert [m["to"] for m in fake_email.sent] == ["alice@example.com"]
        assert fake_email.sent[0]["subject"] == "Your top-up has been verified"

        resp = await client.get("/api/v1/wallet/topup-status", headers=headers_for(member))
        assert resp.json()["needs_topup"] is False

        resp = await client.get(f"/api/v1/admin/wallets/{member.id}/reconcile", headers=headers_for(admin))
        assert resp.json() == {"user_id": member.id, "wallet_balance": 150, "ledger_total": 150, "consistent": True}

        resp = await client.post(f"/api/v1/admin/topups/{txn['id']}/verify", headers=headers_for(admin))
        assert resp.status_code == 400

    async def test_receipt_below_minimum_removes_file(self, client, member, headers_for, tmp_path):
        resp = await client.post(
            "/api/v1/wallet/receipts",
            data={"amount_ttd": "100", "bank_account_id": "rbc"},
            files=_receipt(),
            headers=headers_for(member),
        )
        assert resp.status_code == 400
        assert "Minimum top-up amount" in resp.json()["detail"]
        user_dir = tmp_path / "uploads" / "receipts" / str(member.id)
        assert not user_dir.exists() or list(user_dir.iterdir()) == []

    @pytest.mark.parametrize(
        ("amount", "files"),
        [
            ("abc", _receipt()),
            ("NaN", _receipt()),
            ("150", _receipt(name="receipt.exe", mime="application/octet-stream")),
            ("150", _receipt(content=b"")),
        ],
    )
    async def test_receipt_validation(self, client, member, headers_for, amount, files):
        resp = await client.post(
            "/api/v1/wallet/receipts",
            data={"amount_ttd": amount, "bank_account_id": "rbc"},
            files=files,
            headers=headers_for(member),
        )
        assert resp.status_code == 400

    async def test_reject_route(self, client, db_session, member, admin, headers_for):
        txn = await submit_receipt(db_session, member.id, Decimal("150"), "rbc", "1/r.png")
        await db_session.commit()

        resp = await client.post(
            f"/api/v1/admin/topups/{txn.id}/reject", json={"reason": "Wrong amount"}, headers=headers_for(admin)
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "rejected"
        assert resp.json()["rejection_reason"] == "Wrong amount"

        resp = await client.post(
            f"/api/v1/admin/topups/{txn.id}/reject", json={"reason": "Again"}, headers=headers_for(admin)
        )
        assert resp.status_code == 400

    async def test_admin_routes_guarded(self, client, member, admin, headers_for):
        resp = await client.get("/api/v1/admin/topups/pending", headers=headers_for(member))
        assert resp.status_code == 403
        resp = await client.post("/api/v1/admin/topups/999/verify", headers=headers_for(admin))
        assert resp.status_code == 404

    async def test_transactions_route(self, client, db_session, member, headers_for):
        await _fund(db_session, member.id, 12)
        await db_session.commit()
        resp = await client.get("/api/v1/wallet/transactions", headers=headers_for(member))
        assert [t["points_delta"] for t in resp.json()["transactions"]] == [12]


class TestReminderCron:
    async def test_secret_required(self, client):
        resp = await client.post("/api/v1/cron/topup-reminders")
        assert resp.status_code == 401
        resp = await client.post("/api/v1/cron/topup-reminders", headers={"X-Cron-Secret": "nope"})
        assert resp.status_code == 401

    async def test_unconfigured_secret_is_500(self, client, monkeypatch):
        from sfam.config import get_settings

        monkeypatch.setenv("SF_CRON_SECRET", "")
        get_settings.cache_clear()
        resp = await client.post("/api/v1/cron/topup-reminders", headers=CRON)
        assert resp.status_code == 500

    async def test_runs_with_bearer_secret(self, client, db_session, member, fake_email):
        today = datetime.now(timezone.utc).date()
        db_session.add(Wallet(user_id=member.id, points_balance=0, next_topup_due_on=today))
        await db_session.commit()

        resp = await client.post(
            "/api/v1/cron/topup-reminders", headers={"Authorization": "Bearer cron-test-secret"}
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["summary"] == {"sent": 1}
        assert body["results"][0]["kind"] == "due_today"
        assert len(fake_email.sent) == 1

        resp = await client.post("/api/v1/cron/topup-reminders", headers=CRON)
        assert resp.json()["summary"] == {"skipped": 1}
