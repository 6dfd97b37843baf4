"""Tests for the email service, providers and templates."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from sfam.email.service import (
    _TEMPLATE_REGISTRY,
    EmailService,
    ResendProvider,
    SMTPProvider,
    _create_provider,
    format_sender,
)
from sfam.email.templates import password_reset, payment_verified, wallet_topup_reminder, welcome


class TestEmailTemplates:
    def test_welcome_returns_tuple(self):
        subject, html, text = welcome("Alice")
        assert "Welcome" in subject
        assert "Alice" in html
        assert "Alice" in text

    def test_welcome_escapes_name(self):
        _, html, _ = welcome("<b>Eve</b>")
        assert "<b>Eve</b>" not in html
        assert "&lt;b&gt;Eve&lt;/b&gt;" in html

    def test_welcome_without_name(self):
        _, _, text = welcome(None)
        assert "there" in text

    def test_password_reset_contains_link(self):
        subject, html, text = password_reset("https://example.com/reset-link")
        assert "Reset" in subject
        assert "reset-link" in html
        assert "reset-link" in text
        assert "1 hour" in text

    def test_password_reset_custom_expiry(self):
        _, _, text = password_reset("https://example.com/r", expires_minutes=30)
        assert "30 minutes" in text

    def test_topup_reminder_upcoming(self):
        subject, _, text = wallet_topup_reminder("Alice", 150.0, "March 13, 2026")
        assert "due March 13, 2026" in subject
        assert "TTD $150.00" in text

    def test_topup_reminder_overdue(self):
        subject, _, text = wallet_topup_reminder("Alice", 150.0, "March 1, 2026", overdue_days=1)
        assert "overdue" in subject
        assert "1 day overdue" in text

    def test_payment_verified(self):
        _, html, text = payment_verified("Alice", 1500, 150.0)
        assert "1,500 points" in text
        assert "TTD $150.00" in html


class TestEmailService:
    def test_template_registry(self):
        assert set(_TEMPLATE_REGISTRY) == {"welcome", "password_reset", "wallet_topup_reminder", "payment_verified"}

    def test_format_sender(self):
        assert format_sender("a@b.com") == "a@b.com"
        assert format_sender("a@b.com", "Alice") == "Alice <a@b.com>"

    @pytest.mark.asyncio
    async def test_send_template(self, fake_email):
        provider = fake_email
        service = EmailService(provider=provider)
        assert await service.send_template("member@example.com", "welcome", {"name": "Alice"}) is True
        assert provider.sent[0]["to"] == "member@example.com"
        assert "Welcome" in provider.sent[0]["subject"]

    @pytest.mark.asyncio
    async def test_unknown_template_raises(self, fake_email):
        service = EmailService(provider=fake_email)
        with pytest.raises(ValueError, match="Unknown template"):
            await service.send_template("member@example.com", "nope", {})

    @pytest.mark.asyncio
    async def test_rate_limit(self, fake_email, fake_redis):
        provider = fake_email
        service = EmailService(provider=provider, redis=fake_redis, rate_limit_max=2)
        results = [await service.send_email("Member@Example.com", "s", "<p>h</p>", "h") for _ in range(3)]
        assert results == [True, True, False]
        assert len(provider.sent) == 2

    @pytest.mark.asyncio
    async def test_no_redis_means_no_rate_limit(self, fake_email):
        provider = fake_email
        service = EmailService(provider=provider, rate_limit_max=1)
        for _ in range(3):
            assert await service.send_email("member@example.com", "s", "h", "h") is True

    @pytest.mark.asyncio
    async def test_sender_override_passed_through(self, fake_email):
        provider = fake_email
        service = EmailService(provider=provider)
        await service.send_email("x@example.com", "s", "h", "h", sender="Alice <alice.s@successfamily.online>")
        assert provider.sent[0]["sender"] == "Alice <alice.s@successfamily.online>"


class TestProviders:
    def test_create_smtp_provider(self, monkeypatch):
        from sfam.config import get_settings

        monkeypatch.setenv("SF_EMAIL_PROVIDER", "smtp")
        get_settings.cache_clear()
        assert isinstance(_create_provider(), SMTPProvider)

    def test_create_resend_provider(self, monkeypatch):
        from sfam.config import get_settings

        monkeypatch.setenv("SF_EMAIL_PROVIDER", "resend")
        get_settings.cache_clear()
        assert isinstance(_create_provider(), ResendProvider)

    def test_unsupported_provider(self, monkeypatch):
        from sfam.config import get_settings

        monkeypatch.setenv("SF_EMAIL_PROVIDER", "pigeon")
        get_settings.cache_clear()
        with pytest.raises(ValueError, match="Unsupported"):
            _create_provider()

    @pytest.mark.asyncio
    async def test_resend_posts_payload(self):
        response = MagicMock()
        response.raise_for_status = MagicMock()
        client = MagicMock()
        client.post = AsyncMock(return_value=response)
        provider = ResendProvider(api_key="re_test", default_sender="Success Family <noreply@successfamily.online>", client=client)

        assert await provider.send("to@example.com", "Hi", "<p>Hi</p>", "Hi") is True
        payload = client.post.call_args.kwargs["json"]
        assert payload["to"] == ["to@example.com"]
        assert payload["from"] == "Success Family <noreply@successfamily.online>"
        assert client.post.call_args.kwargs["headers"]["Authorization"] == "Bearer re_test"

    @pytest.mark.asyncio
    async def test_resend_http_error_returns_false(self):
        client = MagicMock()
        client.post = AsyncMock(side_effect=httpx.ConnectError("down"))
        provider = ResendProvider(api_key="re_test", default_sender="noreply@example.com", client=client)
        assert await provider.send("to@example.com", "Hi", "h", "h") is False

    @pytest.mark.asyncio
    async def test_resend_without_key_returns_false(self):
        client = MagicMock()
        client.post = AsyncMock()
        provider = ResendProvider(api_key="", default_sender="noreply@example.com", client=client)
        assert await provider.send("to@example.com", "Hi", "h", "h") is False
        client.post.assert_not_called()
