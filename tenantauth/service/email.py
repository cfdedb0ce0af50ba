from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from tenantauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>{title}</h1>
    {body}
    <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{footer}</p>
  </div>
</body>
</html>
"""


class EmailService:
    """Sends sign-in and administrator verification emails.

    When SMTP is not configured (local development, tests) the message is
    logged instead of sent and the call still reports success.
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
        from_name: str = "Workspace",
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
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
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
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
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
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_sign_in_link(
        self, to_email: str, link: str, otp: str, *, sign_up: bool = False
    ) -> bool:
        """Send a magic link that also shows the one-time code."""
        title = "Create your account" if sign_up else "Sign in to your workspace"
        html_body = _HTML_TEMPLATE.format(
            title=title,
            body=(
                f"<p>Your one-time code is <strong>{escape(otp)}</strong>.</p>"
                f'<p><a href="{escape(link, quote=True)}">Continue in the browser</a></p>'
                "<p>The code expires in 30 minutes and works once.</p>"
            ),
            footer="If you did not request this, you can ignore this email.",
        )
        text_body = (
            f"{title}\n\nYour one-time code: {otp}\n\n{link}\n\n"
            "The code expires in 30 minutes and works once.\n"
        )
        return self._send_email(to_email, title, html_body, text_body)

    def send_admin_mfa_code(self, to_email: str, otp: str, link: str) -> bool:
        """Send the administrator step-up code with a link carrying the ticket."""
        title = "Confirm administrator sign-in"
        html_body = _HTML_TEMPLATE.format(
            title=title,
            body=(
                f"<p>Your verification code is <strong>{escape(otp)}</strong>.</p>"
                f'<p><a href="{escape(link, quote=True)}">Open the verification page</a></p>'
            ),
            footer="If this was not you, change your password immediately.",
        )
        text_body = f"{title}\n\nVerification code: {otp}\n\n{link}\n"
        return self._send_email(to_email, title, html_body, text_body)
