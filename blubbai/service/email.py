from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from blubbai.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #3b6cf6; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .code { font-size: 32px; letter-spacing: 8px; font-weight: 700; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Outbound email sink for verification links and 2FA codes.

    Sends through SMTP with TLS or SSL. When no SMTP host or sender address
    is configured the message is logged instead (dev mode).
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
        platform_name: str = "BlubbAI",
        timeout: float = 5.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.platform_name = platform_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

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
            logger.info(
                "email_dev_mode",
                recipient=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.platform_name} <{self.from_email}>"
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
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(
                    self.smtp_host, self.smtp_port, timeout=self.timeout
                ) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", recipient=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
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
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except ssl.SSLError as e:
            logger.error(
                "email_ssl_error",
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False
        except (TimeoutError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, name: str, link: str) -> bool:
        """Send the address verification link to a newly registered account."""
        subject = f"Verify your {self.platform_name} email"
        safe_name = escape(name)
        safe_link = escape(link, quote=True)

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Welcome to {escape(self.platform_name)}, {safe_name}!</h1>
        <p>Please verify your email address by clicking the button below:</p>
        <p style="margin: 30px 0;">
            <a href="{safe_link}" class="button">Verify Email</a>
        </p>
        <p>This link will expire in 12 hours.</p>
        <div class="footer">
            <p>{escape(self.platform_name)}</p>
            <p>If the button doesn't work, copy and paste this URL: {safe_link}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Welcome to {self.platform_name}, {name}!

Please verify your email address by visiting the link below:

{link}

This link will expire in 12 hours.

---
{self.platform_name}
"""

        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_code(self, to_email: str, code: str) -> bool:
        """Send a one-time login code."""
        subject = f"Your {self.platform_name} login code"

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Your login code</h1>
        <p class="code">{escape(code)}</p>
        <p>The code is valid for about a minute. Do not share it with anyone.</p>
        <div class="footer">
            <p>{escape(self.platform_name)}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""Your {self.platform_name} login code: {code}

The code is valid for about a minute. Do not share it with anyone.
"""

        return self._send_email(to_email, subject, html_body, text_body)
