from __future__ import annotations

import smtplib
import ssl
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class EmailService:
    """Email transport for one-time passcodes.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Plain OTP messages with a purpose label and expiry
    - Logging instead of sending when ``log_only`` is set and SMTP is not configured
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
        from_name: str = "AuthCore",
        log_only: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.log_only = log_only

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise. Never raises.
        """
        if not self.is_configured:
            if self.log_only:
                logger.info(
                    "email_log_only",
                    recipient=self._redact_email(to_email),
                    subject=subject,
                )
                return True
            logger.error(
                "email_not_configured",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return False

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
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
                recipient=self._redact_email(to_email),
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

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_status=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                recipient=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                recipient=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_otp(
        self,
        to_email: str,
        code: str,
        purpose_label: str,
        expires_at: datetime,
        ttl_minutes: int,
    ) -> bool:
        """Send a one-time passcode message."""
        subject = f"Your {purpose_label} verification code"
        expires = expires_at.strftime("%Y-%m-%d %H:%M UTC")

        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <p>Your {purpose_label} verification code is:</p>
    <p style="font-size: 28px; font-weight: 600; letter-spacing: 6px;">{code}</p>
    <p>The code expires in {ttl_minutes} minutes ({expires}) and can be used once.</p>
    <p>If you did not request this code, you can ignore this email.</p>
</body>
</html>
"""

        text_body = f"""Your {purpose_label} verification code is: {code}

The code expires in {ttl_minutes} minutes ({expires}) and can be used once.

If you did not request this code, you can ignore this email.
"""

        return self.send_email(to_email, subject, html_body, text_body)
