from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from hotelbook.logging import get_logger, mask_email

logger = get_logger(__name__)


class OtpDelivery(Protocol):
    def deliver_otp(self, to_email: str, code: str, *, ttl_minutes: int = 10) -> bool:
        ...


class EmailService:
    """Delivers one-time codes by email.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Hotelbook",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
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
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=mask_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def deliver_otp(self, to_email: str, code: str, *, ttl_minutes: int = 10) -> bool:
        """Send a sign-in verification code."""
        subject = "Your Hotelbook verification code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>Verify it's you</h1>
        <p>Enter this code to finish signing in:</p>
        <p class="code">{code}</p>
        <p>The code expires in {ttl_minutes} minutes and can be used once.</p>
        <p>If you didn't try to sign in, change your password.</p>
        <div class="footer">
            <p>Hotelbook</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Your Hotelbook verification code: {code}

The code expires in {ttl_minutes} minutes and can be used once.

If you didn't try to sign in, change your password.

---
Hotelbook
"""

        return self._send_email(to_email, subject, html_body, text_body)
