from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from kidsmin.logging import get_logger
from kidsmin.service.errors import MailDeliveryError

logger = get_logger(__name__)

# Most specific first; the first match names the log event
_SMTP_FAILURES = (
    (smtplib.SMTPAuthenticationError, "email_auth_failed"),
    (smtplib.SMTPConnectError, "email_connect_failed"),
    (smtplib.SMTPRecipientsRefused, "email_recipient_refused"),
    (smtplib.SMTPException, "email_smtp_error"),
    (ssl.SSLError, "email_ssl_error"),
    (OSError, "email_send_failed"),
)

_LINK_VALIDITY = "This link is valid for 24 hours."


def _html_page(body: str, brand: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head>"
        "<body style=\"font-family: sans-serif; color: #1f2933; line-height: 1.5;\">"
        f"<div style=\"max-width: 560px; margin: 0 auto; padding: 32px 16px;\">{body}"
        f"<p style=\"margin-top: 32px; font-size: 12px; color: #5b6470;\">{html.escape(brand)}</p>"
        "</div></body></html>"
    )


def _link_block(url: str, label: str) -> str:
    safe_url = html.escape(url, quote=True)
    return (
        f"<p><a href=\"{safe_url}\" style=\"background: #00bb44; color: #fff; padding: 10px 20px; "
        f"border-radius: 6px; text-decoration: none;\">{html.escape(label)}</a></p>"
        f"<p>{_LINK_VALIDITY}</p>"
        f"<p style=\"font-size: 12px;\">Or open this address: {safe_url}</p>"
    )


class EmailService:
    """Transactional mail for the portal: 2FA codes and set-password links.

    When SMTP is not configured, or ``dev_mode`` is on, messages are logged
    instead of sent so local development works without a mail server.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "KidsMin Portal",
        dev_mode: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.dev_mode = dev_mode

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        local, sep, domain = email.partition("@")
        if not sep:
            return "redacted"
        return f"{local[:2]}***@{domain}"

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message

    def _open_connection(self, context: ssl.SSLContext) -> smtplib.SMTP:
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
            server.starttls(context=context)
            return server
        return smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Hand one message to the SMTP server. Returns False if that failed."""
        redacted = self._redact_email(to_email)
        if self.dev_mode or not self.is_configured:
            logger.info("email_dev_mode", email_redacted=redacted, subject=subject)
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._open_connection(ssl.create_default_context()) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, message.as_string())
        except OSError as exc:
            # smtplib and ssl errors are all OSError subclasses
            event = next(name for kind, name in _SMTP_FAILURES if isinstance(exc, kind))
            logger.error(
                event,
                host=self.smtp_host,
                port=self.smtp_port,
                email_redacted=redacted,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", email_redacted=redacted, subject=subject)
        return True

    def send(self, to_email: str, subject: str, text_body: str, html_body: str) -> None:
        """Send one message, raising MailDeliveryError if it could not be handed off."""
        if not to_email:
            raise MailDeliveryError("Email recipient is required")
        if not self._send_email(to_email, subject, html_body, text_body):
            raise MailDeliveryError()

    def send_two_factor_code(
        self, to_email: str, display_name: str, code: str, ttl_minutes: int
    ) -> None:
        greeting = f"Hi {display_name}," if display_name else "Hi,"
        expiry = (
            f"It expires in {ttl_minutes} minutes. "
            "If you didn't try to sign in, you can ignore this email."
        )
        text_body = f"{greeting}\n\nYour sign-in code is: {code}\n\n{expiry}\n\n---\n{self.from_name}\n"
        html_body = _html_page(
            f"<p>{html.escape(greeting)}</p><p>Your sign-in code is:</p>"
            f"<p style=\"font-size: 28px; letter-spacing: 6px; font-weight: 700;\">{code}</p>"
            f"<p>{expiry}</p>",
            self.from_name,
        )
        self.send(to_email, f"{self.from_name} — Your sign-in code", text_body, html_body)

    def send_set_password(self, to_email: str, url: str) -> None:
        """Invite/bootstrap mail: the link lets the recipient choose a first password."""
        text_body = f"Set your password: {url}\n\n{_LINK_VALIDITY}\n\n---\n{self.from_name}\n"
        html_body = _html_page(
            "<h1>Set your password</h1>" + _link_block(url, "Set your password"),
            self.from_name,
        )
        self.send(to_email, f"{self.from_name} — Set your password", text_body, html_body)

    def send_password_reset(self, to_email: str, url: str) -> None:
        ignore = "If you didn't request this, you can safely ignore this email."
        text_body = (
            f"Reset your password: {url}\n\n{_LINK_VALIDITY} {ignore}\n\n---\n{self.from_name}\n"
        )
        html_body = _html_page(
            "<h1>Reset your password</h1>"
            + _link_block(url, "Reset your password")
            + f"<p>{ignore}</p>",
            self.from_name,
        )
        self.send(to_email, f"{self.from_name} — Reset your password", text_body, html_body)
