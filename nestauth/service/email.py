from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

from nestauth.config import Settings
from nestauth.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class _Template:
    subject: str
    heading: str
    intro: str
    action: str
    path: str
    footer: str = ""


_PASSWORD_RESET = _Template(
    subject="Reset your WonderNest password",
    heading="Reset your password",
    intro="We received a request to reset your password. Use the link below to choose a new one:",
    action="Reset Password",
    path="/reset-password",
    footer="If you didn't request this, you can safely ignore this email.",
)

_EMAIL_VERIFICATION = _Template(
    subject="Verify your WonderNest email",
    heading="Verify your email",
    intro="Welcome to WonderNest! Please confirm your email address:",
    action="Verify Email",
    path="/verify-email",
)


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host or sender is configured the message is logged instead of
    sent, which is what development and test runs rely on. Delivery is best
    effort: ``send_*`` report failure as ``False`` and never raise.
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
        from_name: str = "WonderNest",
        base_url: Optional[str] = None,
        reset_ttl_seconds: int = 24 * 60 * 60,
        verification_ttl_seconds: int = 48 * 60 * 60,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.reset_ttl_seconds = reset_ttl_seconds
        self.verification_ttl_seconds = verification_ttl_seconds

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
            base_url=settings.app_base_url,
            reset_ttl_seconds=settings.password_reset_ttl_seconds,
            verification_ttl_seconds=settings.email_verification_ttl_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact(address: str) -> str:
        local, sep, domain = address.partition("@")
        return f"{local[:2]}***@{domain}" if sep else "redacted"

    def _compose(self, to_email: str, template: _Template, token: str, ttl_seconds: int) -> EmailMessage:
        link = f"{self.base_url}{template.path}?token={token}"
        hours = max(1, ttl_seconds // 3600)
        expiry = f"This link will expire in {hours} hours."
        text_lines = [template.subject, "", template.intro, "", link, "", expiry]
        html_lines = [
            "<!DOCTYPE html>",
            "<html>",
            "<body>",
            f"    <h1>{template.heading}</h1>",
            f"    <p>{template.intro}</p>",
            f'    <p><a href="{link}">{template.action}</a></p>',
            f"    <p>{expiry}</p>",
        ]
        if template.footer:
            text_lines.extend(["", template.footer])
            html_lines.append(f"    <p>{template.footer}</p>")
        html_lines.extend(["</body>", "</html>"])

        msg = EmailMessage()
        msg["Subject"] = template.subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.set_content("\n".join(text_lines) + "\n")
        msg.add_alternative("\n".join(html_lines) + "\n", subtype="html")
        return msg

    def _deliver(self, to_email: str, msg: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        with server:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, to_email, msg.as_string())

    def _send(self, to_email: str, template: _Template, token: str, ttl_seconds: int) -> bool:
        recipient = self._redact(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", to=recipient, subject=template.subject)
            return True
        try:
            self._deliver(to_email, self._compose(to_email, template, token, ttl_seconds))
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=template.subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        return self._send(to_email, _PASSWORD_RESET, token, self.reset_ttl_seconds)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        return self._send(to_email, _EMAIL_VERIFICATION, token, self.verification_ttl_seconds)
