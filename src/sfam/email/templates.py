"""
Transactional email templates for Success Family.

All templates use inline CSS for email client compatibility. Each template
function returns (subject, html_body, text_body). User-supplied values are
HTML-escaped before they reach the markup.
"""

from __future__ import annotations

from html import escape

from sfam.config import get_settings

# Color constants
BG_PAGE = "#F4F5F7"
BG_CARD = "#FFFFFF"
BG_SURFACE = "#F8F9FB"
ACCENT = "#6D28D9"
DANGER = "#DC3545"
TEXT_PRIMARY = "#1F2933"
TEXT_SECONDARY = "#52606D"
BORDER = "#E4E7EB"

APP_NAME = "Success Family"
SIGNATURE = f"-- The {APP_NAME} Team"


def _base_layout(content: str) -> str:
    """Wrap content in the base email layout."""
    return f"""\
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{APP_NAME}</title>
</head>
<body style="margin: 0; padding: 0; background-color: {BG_PAGE}; font-family: Arial, Helvetica, sans-serif;">
    <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="100%" style="background-color: {BG_PAGE};">
        <tr>
            <td align="center" style="padding: 40px 20px;">
                <table role="presentation" cellspacing="0" cellpadding="0" border="0" width="600" style="max-width: 600px; width: 100%;">
                    <tr>
                        <td align="center" style="padding-bottom: 24px;">
                            <span style="font-size: 22px; font-weight: 700; color: {ACCENT};">{APP_NAME}</span>
                        </td>
                    </tr>
                    <tr>
                        <td style="background-color: {BG_CARD}; border: 1px solid {BORDER}; border-radius: 12px; padding: 36px 32px;">
                            {content}
                        </td>
                    </tr>
                    <tr>
                        <td align="center" style="padding-top: 24px;">
                            <p style="color: {TEXT_SECONDARY}; font-size: 12px; line-height: 1.5; margin: 0;">
                                This email was sent by {APP_NAME}.<br>
                                If you didn't expect this email, you can safely ignore it.
                            </p>
                        </td>
                    </tr>
                </table>
            </td>
        </tr>
    </table>
</body>
</html>"""


def _button(url: str, label: str, color: str = ACCENT) -> str:
    return f"""\
<table role="presentation" cellspacing="0" cellpadding="0" border="0" style="margin: 28px auto;">
    <tr>
        <td align="center" style="background-color: {color}; border-radius: 6px;">
            <a href="{url}" target="_blank" style="display: inline-block; padding: 12px 28px; color: #FFFFFF; font-size: 16px; font-weight: 600; text-decoration: none; border-radius: 6px;">
                {label}
            </a>
        </td>
    </tr>
</table>"""


def _heading(text: str) -> str:
    return f'<h1 style="color: {TEXT_PRIMARY}; font-size: 24px; font-weight: 700; margin: 0 0 16px 0;">{text}</h1>'


def _paragraph(text: str) -> str:
    return f'<p style="color: {TEXT_SECONDARY}; font-size: 16px; line-height: 1.6; margin: 0 0 16px 0;">{text}</p>'


def _app_url(path: str = "") -> str:
    return f"{get_settings().frontend_base_url.rstrip('/')}{path}"


def welcome(name: str | None) -> tuple[str, str, str]:
    """Sent after registration."""
    display = escape(name or "there")
    subject = f"Welcome to {APP_NAME}!"
    url = _app_url()
    content = (
        _heading(f"Welcome to {APP_NAME}, {display}!")
        + _paragraph("We're excited to have you join our community of success-driven individuals.")
        + _paragraph("Get ready to connect, learn, and grow with like-minded people on their journey to success.")
        + _button(url, "Get Started")
    )
    text_body = (
        f"Welcome to {APP_NAME}, {name or 'there'}!\n\n"
        f"We're excited to have you join our community.\n\n"
        f"Get started: {url}\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body


def password_reset(reset_url: str, name: str | None = None, expires_minutes: int = 60) -> tuple[str, str, str]:
    subject = f"Reset Your Password - {APP_NAME}"
    expiry = "1 hour" if expires_minutes == 60 else f"{expires_minutes} minutes"
    greeting = f"Hi {escape(name)}, you" if name else "You"
    content = (
        _heading("Password Reset Request")
        + _paragraph(f"{greeting} requested to reset your password. Click the button below to create a new password:")
        + _button(reset_url, "Reset Password", color=DANGER)
        + _paragraph(f"This link will expire in {expiry} for security reasons.")
        + f"""\
<p style="color: {TEXT_SECONDARY}; font-size: 12px; line-height: 1.5; margin: 0;">
    If the button doesn't work, copy and paste this URL:<br>
    <a href="{reset_url}" style="color: {ACCENT}; word-break: break-all;">{reset_url}</a>
</p>"""
    )
    text_body = (
        f"Password reset request\n\n"
        f"Click this link to set a new password:\n\n{reset_url}\n\n"
        f"This link expires in {expiry}. If you didn't request a reset, ignore this email.\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body


def wallet_topup_reminder(
    name: str,
    amount: float,
    due_date: str,
    overdue_days: int = 0,
) -> tuple[str, str, str]:
    """
    Top-up reminder; wording switches to overdue when ``overdue_days`` > 0.

    Returns:
        (subject, html_body, text_body)
    """
    display = escape(name)
    amount_text = f"TTD ${amount:,.2f}"
    url = _app_url("/wallet")
    if overdue_days > 0:
        day_word = "day" if overdue_days == 1 else "days"
        subject = f"Your {APP_NAME} top-up is overdue"
        status_line = f"Your monthly top-up was due on {due_date} and is now {overdue_days} {day_word} overdue."
    else:
        subject = f"Your {APP_NAME} top-up is due {due_date}"
        status_line = f"Your monthly top-up is due on {due_date}."

    content = (
        _heading("Wallet top-up reminder")
        + _paragraph(f"Hi {display},")
        + _paragraph(status_line)
        + f"""\
<div style="background-color: {BG_SURFACE}; border: 1px solid {BORDER}; border-radius: 8px; padding: 16px; margin: 16px 0;">
    <p style="color: {TEXT_PRIMARY}; font-size: 14px; margin: 0;">
        Minimum top-up: <strong>{amount_text}</strong>
    </p>
</div>"""
        + _paragraph("Top up to keep full access to communities, events and messaging.")
        + _button(url, "Top Up Now")
    )
    text_body = (
        f"Hi {name},\n\n"
        f"{status_line}\n"
        f"Minimum top-up: {amount_text}\n\n"
        f"Top up here: {url}\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body


def payment_verified(name: str, points: int, amount: float) -> tuple[str, str, str]:
    subject = "Your top-up has been verified"
    url = _app_url("/wallet")
    content = (
        _heading("Payment verified")
        + _paragraph(f"Hi {escape(name)},")
        + _paragraph(
            f"Your payment of <strong>TTD ${amount:,.2f}</strong> has been verified and "
            f"<strong>{points:,} points</strong> were added to your wallet."
        )
        + _button(url, "View Wallet")
    )
    text_body = (
        f"Hi {name},\n\n"
        f"Your payment of TTD ${amount:,.2f} has been verified and {points:,} points were added to your wallet.\n\n"
        f"{url}\n\n"
        f"{SIGNATURE}"
    )
    return subject, _base_layout(content), text_body
