"""
Email service with provider abstraction.

Supports SMTP (default) and the Resend API; the provider is selected via
configuration. Personal-mailbox sends pass an explicit sender so replies go
to the member's own address.
"""

from __future__ import annotations

import hashlib
import ssl
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from sfam.config import get_settings
from sfam.email.templates import password_reset, payment_verified, wallet_topup_reminder, welcome

if TYPE_CHECKING:
    from collections.abc import Callable

    from redis.asyncio import Redis

logger = structlog.get_logger()

RESEND_API_URL = "https://api.resend.com/emails"

_TEMPLATE_REGISTRY: dict[str, Callable[..., tuple[str, str, str]]] = {
    "welcome": welcome,
    "password_reset": password_reset,
    "wallet_topup_reminder": wallet_topup_reminder,
    "payment_verified": payment_verified,
}


def format_sender(address: str, name: str | None = None) -> str:
    return f"{name} <{address}>" if name else address


class BaseEmailProvider(ABC):
    """Abstract base class for email delivery providers."""

    @abstractmethod
    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: str | None = None,
    ) -> bool:
        """Send an email. Returns True on success."""
        ...


class SMTPProvider(BaseEmailProvider):
    """Send emails via SMTP using aiosmtplib."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        default_sender: str,
        use_tls: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.default_sender = default_sender
        self.use_tls = use_tls

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: str | None = None,
    ) -> bool:
        import aiosmtplib

        msg = MIMEMultipart("alternative")
        msg["From"] = sender or self.default_sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            tls_context = ssl.create_default_context() if self.use_tls else None
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                start_tls=self.use_tls,
                tls_context=tls_context,
            )
        except Exception:
            logger.exception("email_send_failed", to=to_email, provider="smtp")
            return False
        logger.info("email_sent", to=to_email, subject=subject, provider="smtp")
        return True


class ResendProvider(BaseEmailProvider):
    """Send emails via the Resend HTTP API."""

    def __init__(self, api_key: str, default_sender: str, client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key
        self.default_sender = default_sender
        self._client = client

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if self._client is not None:
            return await self._client.post(RESEND_API_URL, headers=headers, json=payload, timeout=10.0)
        async with httpx.AsyncClient() as client:
            return await client.post(RESEND_API_URL, headers=headers, json=payload, timeout=10.0)

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: str | None = None,
    ) -> bool:
        if not self.api_key:
            logger.error("email_send_failed", to=to_email, provider="resend", error="RESEND_API_KEY is not configured")
            return False
        try:
            response = await self._post({
                "from": sender or self.default_sender,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
                "text": text_body,
            })
            response.raise_for_status()
        except httpx.HTTPError:
            logger.exception("email_send_failed", to=to_email, provider="resend")
            return False
        logger.info("email_sent", to=to_email, subject=subject, provider="resend")
        return True


def _create_provider() -> BaseEmailProvider:
    """Create email provider based on configuration."""
    settings = get_settings()
    provider_name = settings.email_provider.lower()
    default_sender = format_sender(settings.email_from_address, settings.email_from_name)

    if provider_name == "smtp":
        return SMTPProvider(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            default_sender=default_sender,
            use_tls=settings.smtp_use_tls,
        )
    if provider_name == "resend":
        return ResendProvider(api_key=settings.resend_api_key, default_sender=default_sender)
    msg = f"Unsupported email provider: {provider_name}"
    raise ValueError(msg)


class EmailService:
    """
    High-level email service.

    Handles per-recipient rate limiting and template rendering.
    """

    RATE_LIMIT_WINDOW = 3600

    def __init__(
        self,
        provider: BaseEmailProvider | None = None,
        redis: Redis | None = None,
        rate_limit_max: int | None = None,
    ) -> None:
        self.provider = provider or _create_provider()
        self._redis = redis
        self.rate_limit_max = rate_limit_max or get_settings().email_rate_limit_per_hour

    async def _check_rate_limit(self, email: str) -> bool:
        """Check if we can send another email to this address."""
        if self._redis is None:
            return True
        key = f"email_rate:{hashlib.sha256(email.lower().encode()).hexdigest()}"
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, self.RATE_LIMIT_WINDOW)
        return count <= self.rate_limit_max

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        sender: str | None = None,
    ) -> bool:
        """Send with rate limiting. Returns False if rate limited or failed."""
        if not await self._check_rate_limit(to):
            logger.warning("email_rate_limited", to=to, subject=subject)
            return False
        return await self.provider.send(to, subject, html_body, text_body, sender=sender)

    async def send_template(
        self,
        to: str,
        template_name: str,
        context: dict[str, Any],
    ) -> bool:
        """
        Render a registered template with ``context`` as keyword arguments and send.

        Raises:
            ValueError: If the template name is unknown.
        """
        template_func = _TEMPLATE_REGISTRY.get(template_name)
        if template_func is None:
            msg = f"Unknown template: {template_name}"
            raise ValueError(msg)
        subject, html_body, text_body = template_func(**context)
        return await self.send_email(to, subject, html_body, text_body)


# Module-level singleton
_email_service: EmailService | None = None


def get_email_service(redis: Redis | None = None) -> EmailService:
    """Get or create the email service singleton."""
    global _email_service  # noqa: PLW0603
    if _email_service is None:
        _email_service = EmailService(redis=redis)
    return _email_service


def reset_email_service() -> None:
    """Reset the email service singleton (for testing)."""
    global _email_service  # noqa: PLW0603
    _email_service = None
