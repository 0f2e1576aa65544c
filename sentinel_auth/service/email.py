from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr
from enum import Enum
from html import escape
from typing import Optional, Protocol

import httpx

from sentinel_auth.logging import get_logger, redact_email

logger = get_logger(__name__)

PRODUCT_NAME = "Sentinel AI"


class MessageKind(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    LOGIN_ALERT = "login_alert"
    PASSWORD_CHANGED = "password_changed"


@dataclass(frozen=True)
class DeliveryReceipt:
    """Outcome of a send attempt. Falsy when the message was not delivered."""

    kind: MessageKind
    to: str
    sent: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.sent


class Notifier(Protocol):
    def send_email_verification(self, to_email: str, token: str) -> DeliveryReceipt: ...

    def send_password_reset(self, to_email: str, token: str) -> DeliveryReceipt: ...

    def send_login_alert(
        self,
        to_email: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        login_at: datetime,
    ) -> DeliveryReceipt: ...

    def send_password_changed(self, to_email: str) -> DeliveryReceipt: ...


class EmailDeliveryError(Exception):
    """Raised by a transport when the provider rejects or cannot take a message."""


_BASE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .details { background: #f3f4f6; padding: 16px; border-radius: 8px; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _html_page(title: str, body: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_BASE_STYLE}    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
{body}
        <div class="footer">
            <p>{PRODUCT_NAME}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for the auth flows.

    Transports, first configured wins:
    - Resend HTTP API (``resend_api_key``)
    - SMTP with TLS/SSL (``smtp_host``)
    - Logging only, for development

    Sends never raise; the caller gets a ``DeliveryReceipt`` and decides
    whether a failed delivery matters.
    """

    def __init__(
        self,
        *,
        app_base_url: str,
        frontend_url: str,
        from_email: str = f"{PRODUCT_NAME} <onboarding@resend.dev>",
        resend_api_key: Optional[str] = None,
        resend_api_url: str = "https://api.resend.com/emails",
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        verification_ttl_hours: int = 24,
        reset_ttl_minutes: int = 60,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self.app_base_url = app_base_url.rstrip("/")
        self.frontend_url = frontend_url.rstrip("/")
        self.from_email = from_email
        self.resend_api_key = resend_api_key
        self.resend_api_url = resend_api_url
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.verification_ttl_hours = verification_ttl_hours
        self.reset_ttl_minutes = reset_ttl_minutes
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "EmailService":
        return cls(
            app_base_url=settings.app_base_url,
            frontend_url=settings.frontend_url,
            from_email=settings.email_from,
            resend_api_key=settings.resend_api_key,
            resend_api_url=settings.resend_api_url,
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            verification_ttl_hours=settings.verification_token_ttl_hours,
            reset_ttl_minutes=settings.reset_token_ttl_minutes,
            **kwargs,
        )

    @property
    def transport(self) -> str:
        if self.resend_api_key:
            return "resend"
        if self.smtp_host:
            return "smtp"
        return "log"

    @property
    def is_configured(self) -> bool:
        return self.transport != "log"

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()

    # -- delivery -----------------------------------------------------

    def send(
        self,
        kind: MessageKind,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> DeliveryReceipt:
        transport = self.transport
        try:
            if transport == "resend":
                self._send_resend(to_email, subject, html_body, text_body)
            elif transport == "smtp":
                self._send_smtp(to_email, subject, html_body, text_body)
            else:
                logger.info(
                    "email_dev_mode",
                    kind=kind.value,
                    to=redact_email(to_email),
                    subject=subject,
                    body_preview=text_body[:200] if text_body else html_body[:200],
                )
                return DeliveryReceipt(kind, to_email, sent=True)
        except (EmailDeliveryError, httpx.HTTPError, smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                kind=kind.value,
                transport=transport,
                to=redact_email(to_email),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryReceipt(kind, to_email, sent=False, error=str(exc))
        logger.info(
            "email_sent", kind=kind.value, transport=transport, to=redact_email(to_email)
        )
        return DeliveryReceipt(kind, to_email, sent=True)

    def _client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(timeout=httpx.Timeout(10.0, connect=5.0))
        return self._http_client

    def _send_resend(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> None:
        payload = {
            "from": self.from_email,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            payload["text"] = text_body
        response = self._client().post(
            self.resend_api_url,
            json=payload,
            headers={"Authorization": f"Bearer {self.resend_api_key}"},
        )
        if response.status_code >= 400:
            raise EmailDeliveryError(
                f"resend rejected message: HTTP {response.status_code}"
            )

    def _send_smtp(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> None:
        _, sender_address = parseaddr(self.from_email)
        sender_address = sender_address or self.smtp_user
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=redact_email(to_email),
        )
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(sender_address, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(sender_address, to_email, msg.as_string())

    # -- messages -----------------------------------------------------

    def verification_url(self, token: str) -> str:
        return f"{self.app_base_url}/v1/auth/verify-email?token={token}"

    def reset_url(self, token: str) -> str:
        return f"{self.frontend_url}/reset-password?token={token}"

    def send_email_verification(self, to_email: str, token: str) -> DeliveryReceipt:
        verify_url = self.verification_url(token)
        subject = f"Verify your {PRODUCT_NAME} email"
        html_body = _html_page(
            "Verify your email",
            f"""        <p>Thanks for signing up! Please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;"><a href="{verify_url}" class="button">Verify Email</a></p>
        <p>This link will expire in {self.verification_ttl_hours} hours.</p>
        <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>""",
        )
        text_body = f"""Verify your {PRODUCT_NAME} email

Thanks for signing up! Please verify your email address by visiting the link below:

{verify_url}

This link will expire in {self.verification_ttl_hours} hours.
"""
        return self.send(
            MessageKind.EMAIL_VERIFICATION, to_email, subject, html_body, text_body
        )

    def send_password_reset(self, to_email: str, token: str) -> DeliveryReceipt:
        reset_url = self.reset_url(token)
        subject = f"Reset your {PRODUCT_NAME} password"
        html_body = _html_page(
            "Reset your password",
            f"""        <p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
        <p>This link will expire in {self.reset_ttl_minutes} minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>""",
        )
        text_body = f"""Reset your {PRODUCT_NAME} password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self.send(MessageKind.PASSWORD_RESET, to_email, subject, html_body, text_body)

    def send_login_alert(
        self,
        to_email: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        login_at: datetime,
    ) -> DeliveryReceipt:
        subject = f"New login to your {PRODUCT_NAME} account"
        when = login_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip()
        ip_text = ip_address or "unknown"
        agent_text = user_agent or "unknown"
        html_body = _html_page(
            "New login detected",
            f"""        <p>We noticed a login to your account from a network you haven't used recently.</p>
        <div class="details">
            <p><strong>Time:</strong> {escape(when)}</p>
            <p><strong>IP address:</strong> {escape(ip_text)}</p>
            <p><strong>Device:</strong> {escape(agent_text)}</p>
        </div>
        <p>If this was you, no action is needed. If not, reset your password right away.</p>""",
        )
        text_body = f"""New login to your {PRODUCT_NAME} account

We noticed a login to your account from a network you haven't used recently.

Time: {when}
IP address: {ip_text}
Device: {agent_text}

If this was you, no action is needed. If not, reset your password right away.
"""
        return self.send(MessageKind.LOGIN_ALERT, to_email, subject, html_body, text_body)

    def send_password_changed(self, to_email: str) -> DeliveryReceipt:
        subject = f"Your {PRODUCT_NAME} password was changed"
        html_body = _html_page(
            "Password changed",
            """        <p>The password for your account was just changed and every active session was signed out.</p>
        <p>If you didn't make this change, reset your password immediately.</p>""",
        )
        text_body = f"""Your {PRODUCT_NAME} password was changed

The password for your account was just changed and every active session was signed out.

If you didn't make this change, reset your password immediately.
"""
        return self.send(
            MessageKind.PASSWORD_CHANGED, to_email, subject, html_body, text_body
        )
