from __future__ import annotations

import smtplib
import ssl
from html import escape
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from tokenward.config import Settings
from tokenward.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailConfirmationPayload:
    recipient: str
    name: str
    verify_url: str


@dataclass(frozen=True)
class EmailResetPasswordPayload:
    recipient: str
    name: str
    reset_url: str


class MailSender(Protocol):
    """Outbound mail hand-off used by the auth service.

    Calls are blocking; the auth service runs them in a worker thread and
    never waits on the outcome.
    """

    def send_confirmation_email(self, payload: EmailConfirmationPayload) -> bool: ...

    def send_reset_password_email(self, payload: EmailResetPasswordPayload) -> bool: ...


_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
        <h1>{title}</h1>
        <p>Hi {name},</p>
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{url}">{action}</a></p>
        <p>{footer}</p>
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">
            If the link doesn't work, copy and paste this URL: {url}
        </p>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{title}

Hi {name},

{intro}

{url}

{footer}

---
{sender}
"""


class EmailService:
    """SMTP delivery for confirmation and password-reset mail.

    Without an SMTP host the message is logged instead of sent (dev mode).
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
        from_name: str = "Tokenward",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(self, **fields: str) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(**{k: escape(v) for k, v in fields.items()})
        text_body = _TEXT_TEMPLATE.format(sender=self.from_name, **fields)
        return html_body, text_body

    def _deliver(self, to_email: str, subject: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=self._redact_email(to_email),
        )
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            ) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
    ) -> bool:
        """Send one message; returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(to_email, subject, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_confirmation_email(self, payload: EmailConfirmationPayload) -> bool:
        subject = f"Verify your {self.from_name} email"
        html_body, text_body = self._render(
            title="Verify your email",
            name=payload.name,
            intro="Thanks for signing up! Please confirm your email address:",
            url=payload.verify_url,
            action="Verify Email",
            footer="If you didn't create an account, you can ignore this email.",
        )
        return self._send_email(payload.recipient, subject, html_body, text_body)

    def send_reset_password_email(self, payload: EmailResetPasswordPayload) -> bool:
        subject = f"Reset your {self.from_name} password"
        html_body, text_body = self._render(
            title="Reset your password",
            name=payload.name,
            intro="We received a request to reset your password. Choose a new one here:",
            url=payload.reset_url,
            action="Reset Password",
            footer="If you didn't request this, you can safely ignore this email.",
        )
        return self._send_email(payload.recipient, subject, html_body, text_body)
