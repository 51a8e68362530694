"""
notify/email.py -- Best-effort transactional email over SMTP.

Fire-and-forget: send failures are logged and swallowed. The caller (the
password-reset and invitation flows) must respond identically whether or not
the email actually went out, so nothing here raises.

When SMTP_HOST is not configured (local development) messages are logged
instead of sent, with the recipient redacted.

Layer rule: notify/ imports only stdlib and core/. It knows nothing about
tokens beyond the opaque strings it is asked to embed in links.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from email.message import EmailMessage
from urllib.parse import urlencode

logger = logging.getLogger("accountd.notify.email")

_TIMEOUT = 30


def redact_email(email: str) -> str:
    """Redact an email address for logging to avoid PII leakage."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender:
    """SMTP sender with reset and invitation templates.

    Usage:
        mailer = EmailSender.from_settings(get_settings())
        mailer.send_password_reset("alice@example.com", token)
    """

    def __init__(
        self,
        *,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_use_tls: bool = True,
        from_email: str = "",
        base_url: str = "http://localhost:5173",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.base_url = base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "EmailSender":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.mail_from,
            base_url=settings.frontend_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}{path}?{urlencode({'token': token})}"

    def send_password_reset(self, to_email: str, token: str) -> bool:
        link = self._link("/reset-password", token)
        body = (
            "<html><body><h3>Password reset</h3>"
            f'<p>Click <a href="{html.escape(link)}">here</a> to reset your password.</p>'
            "<p>If you did not ask for this, you can ignore this email.</p>"
            "</body></html>"
        )
        return self.send(to_email, "Reset your password", body, text_body=f"Reset your password: {link}")

    def send_invitation(self, to_email: str, token: str) -> bool:
        link = self._link("/verify-invitation", token)
        body = (
            "<html><body><h3>You have been invited</h3>"
            f'<p>Click <a href="{html.escape(link)}">here</a> to set your password and activate your account.</p>'
            "</body></html>"
        )
        return self.send(to_email, "You're invited", body, text_body=f"Accept your invitation: {link}")

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def send(self, to_email: str, subject: str, html_body: str, text_body: str | None = None) -> bool:
        """Send one message. Returns True on success, False on any failure."""
        if not self.is_configured:
            logger.info("SMTP not configured; email to %s not sent (subject=%r)", redact_email(to_email), subject)
            return False

        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        msg.set_content(text_body or subject)
        msg.add_alternative(html_body, subtype="html")

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_TIMEOUT) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=_TIMEOUT) as server:
                    self._login(server)
                    server.send_message(msg)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Email to %s failed (%s): %s", redact_email(to_email), type(exc).__name__, exc
            )
            return False

        logger.info("Email sent to %s (subject=%r)", redact_email(to_email), subject)
        return True

    def _login(self, server: smtplib.SMTP) -> None:
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
