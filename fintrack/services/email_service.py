"""
Email service.

Handles sending emails via SMTP using aiosmtplib for async support.
Used by registration (verification link), password reset and the
security notifications (password changed, all sessions signed out).

With ``EMAIL_ENABLED`` off the message is logged instead of sent, which
is what development and the test suite use.  Security notifications are
best effort: a delivery failure is logged and the flow that sent it
completes.
"""

import html
import logging
from email.message import EmailMessage

import aiosmtplib

from fintrack.core.config import settings
from fintrack.models.user import User

logger = logging.getLogger(__name__)


async def send_email(to: str, subject: str, html_body: str) -> None:
    """Send an HTML email via the configured SMTP server."""
    if not settings.EMAIL_ENABLED:
        logger.info("Email delivery disabled; skipping %r", subject)
        return

    message = EmailMessage()
    message["From"] = settings.SENDER_EMAIL
    message["To"] = to
    message["Subject"] = subject
    message.set_content(html_body, subtype="html")

    try:
        await aiosmtplib.send(
            message,
            hostname=settings.EMAIL_HOST,
            port=settings.EMAIL_PORT,
            username=settings.SENDER_EMAIL,
            password=settings.EMAIL_PASSWORD,
            start_tls=True,
        )
        logger.info("Email sent: %r", subject)
    except Exception:
        logger.exception("Failed to send email %r", subject)
        raise


def _wrap(title: str, body: str) -> str:
    return f"""\
    <html>
    <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
        <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
            <h2 style="color: #2c3e50;">{title}</h2>
            {body}
        </div>
    </body>
    </html>
    """


def _button(link: str, label: str) -> str:
    return f"""
            <div style="text-align: center; margin: 30px 0;">
                <a href="{link}"
                   style="background-color: #3498db; color: #fff; padding: 12px 30px;
                          text-decoration: none; border-radius: 5px; font-size: 16px;">
                    {label}
                </a>
            </div>
            <p style="color: #7f8c8d; font-size: 13px;">
                If the button doesn't work, copy and paste this link into your browser:<br>
                <a href="{link}">{link}</a>
            </p>"""


async def send_verification_email(user: User, token: str) -> None:
    link = f"{settings.FRONTEND_URL}/verify-email?token={token}"
    body = (
        f"<p>Welcome to <strong>{settings.APP_NAME}</strong>! Please confirm your email address.</p>"
        + _button(link, "Verify Email")
        + f'<p style="color: #7f8c8d; font-size: 13px;">This link will expire in '
        f"{settings.EMAIL_VERIFICATION_EXPIRE_HOURS} hours.</p>"
    )
    await send_email(user.email, f"Verify your {settings.APP_NAME} account", _wrap("Confirm your email", body))


async def send_password_reset_email(user: User, token: str) -> None:
    link = f"{settings.FRONTEND_URL}/reset-password?token={token}"
    body = (
        "<p>We received a request to reset your password.</p>"
        + _button(link, "Reset Password")
        + f'<p style="color: #7f8c8d; font-size: 13px;">This link will expire in '
        f"{settings.PASSWORD_RESET_EXPIRE_HOURS} hour(s). If you did not ask for it, ignore this email.</p>"
    )
    await send_email(user.email, f"Reset your {settings.APP_NAME} password", _wrap("Password reset", body))


async def _send_notification(to: str, subject: str, html_body: str) -> None:
    """Send a security notification; delivery failures are logged, not raised."""
    try:
        await send_email(to, subject, html_body)
    except Exception:
        logger.warning("Security notification %r not delivered", subject)


async def send_password_changed_email(user: User, client_ip: str | None) -> None:
    origin = f" from IP address <strong>{html.escape(client_ip)}</strong>" if client_ip else ""
    body = (
        f"<p>Your password was changed{origin}. All other sessions have been signed out.</p>"
        "<p>If this wasn't you, reset your password immediately.</p>"
    )
    await _send_notification(
        user.email, f"Your {settings.APP_NAME} password was changed", _wrap("Password changed", body)
    )


async def send_all_sessions_logout_alert(user: User) -> None:
    body = (
        "<p>All sessions on your account were just signed out.</p>"
        "<p>If this wasn't you, change your password.</p>"
    )
    await _send_notification(user.email, f"{settings.APP_NAME} security alert", _wrap("Signed out everywhere", body))
