from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from ssoauth.config import PENDING_REGISTRATION_TTL_SECONDS, Settings
from ssoauth.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Sends verification codes over SMTP.

    SMTP is blocking, so the public coroutine runs the delivery in a worker
    thread. Without an SMTP host the message is logged instead (dev mode).
    Delivery problems are logged and reported as ``False``.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        smtp_timeout: int = 10,
        from_email: Optional[str] = None,
        from_name: str = "SSO",
        base_url: Optional[str] = None,
        support_email: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.smtp_timeout = smtp_timeout
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.support_email = support_email or self.from_email

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            smtp_timeout=settings.smtp_timeout_seconds,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
            support_email=settings.support_email,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _deliver(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
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
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        context = ssl.create_default_context()

        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.smtp_timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to_email], msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.smtp_timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, [to_email], msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email), error=str(e))
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
        except (ssl.SSLError, OSError) as e:
            # TimeoutError and refused connections land here too
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def render_verification(self, name: str, code: str) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for a verification code."""
        expiry_minutes = PENDING_REGISTRATION_TTL_SECONDS // 60
        app_name = self.from_name
        greeting = f"Hello, {name}!" if name else "Hello!"
        support = self.support_email or ""
        subject = f"Your {app_name} verification code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; margin: 24px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <p>{html.escape(greeting)}</p>
        <p>Use this code to confirm your email address:</p>
        <div class="code">{html.escape(code)}</div>
        <p>The code expires in {expiry_minutes} minutes. If you did not sign up, ignore this email.</p>
        <div class="footer">
            <p><a href="{html.escape(self.base_url)}">{html.escape(app_name)}</a></p>
            <p>Questions? Write to {html.escape(support)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{greeting}

Use this code to confirm your email address: {code}

The code expires in {expiry_minutes} minutes. If you did not sign up, ignore this email.

---
{app_name} {self.base_url}
Questions? Write to {support}
"""
        return subject, html_body, text_body

    async def send_verification_code(self, to_email: str, name: str, code: str) -> bool:
        subject, html_body, text_body = self.render_verification(name, code)
        return await asyncio.to_thread(self._deliver, to_email, subject, html_body, text_body)
