from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from appauth.logging import get_logger, hash_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{action}</a>
        </p>
        <p>This link will expire in {expiry}.</p>
        <div class="footer">
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email over SMTP.

    When SMTP is not configured the message is logged instead of sent, which
    is what local development and the test suite rely on. Delivery problems
    are reported through the boolean return value; they never raise.
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
        from_name: str = "App Accounts",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
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

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if it was handed off."""
        recipient = hash_email(to_email)
        if not self.is_configured:
            logger.info("email_dev_mode", email_hash=recipient, subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
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
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                email_hash=recipient,
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", email_hash=recipient)
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                email_hash=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_transport_error",
                email_hash=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", email_hash=recipient, subject=subject)
        return True

    def send_email_verification(
        self, to_email: str, token: str, app_endpoint: str, ttl_hours: int = 24
    ) -> bool:
        verify_url = f"{app_endpoint.rstrip('/')}/verify-email?token={token}"
        html_body = _HTML_TEMPLATE.format(
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm your email address:",
            url=verify_url,
            action="Verify Email",
            expiry=f"{ttl_hours} hours",
        )
        text_body = (
            "Verify your email\n\n"
            f"Confirm your address by visiting:\n\n{verify_url}\n\n"
            f"This link will expire in {ttl_hours} hours.\n"
        )
        return self._send_email(to_email, "Verify your email", html_body, text_body)

    def send_password_reset(
        self, to_email: str, token: str, app_endpoint: str, ttl_minutes: int = 60
    ) -> bool:
        reset_url = f"{app_endpoint.rstrip('/')}/reset-password?token={token}"
        html_body = _HTML_TEMPLATE.format(
            heading="Reset your password",
            intro="We received a request to reset your password for this app.",
            url=reset_url,
            action="Reset Password",
            expiry=f"{ttl_minutes} minutes",
        )
        text_body = (
            "Reset your password\n\n"
            f"Choose a new password by visiting:\n\n{reset_url}\n\n"
            f"This link will expire in {ttl_minutes} minutes.\n"
            "If you didn't request this, you can safely ignore this email.\n"
        )
        return self._send_email(to_email, "Reset your password", html_body, text_body)
