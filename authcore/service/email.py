from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from authcore.logging import get_logger, mask_email

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
        <p>This link will expire in {lifetime}.</p>
        <p>{outro}</p>
        <div class="footer">
            <p>{sender}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""

_TEXT_TEMPLATE = """{heading}

{intro}

{url}

This link will expire in {lifetime}.

{outro}

---
{sender}
"""


class EmailService:
    """Transactional email for the account workflows.

    Without an SMTP host the message is logged instead of sent, which is
    the behaviour used in development and tests. Every ``send_*`` method
    returns whether delivery succeeded and never raises.
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
        from_name: str = "Authcore",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        password_reset_ttl_hours: int = 1,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.verification_ttl_hours = verification_ttl_hours
        self.password_reset_ttl_hours = password_reset_ttl_hours

    @staticmethod
    def _describe_hours(hours: int) -> str:
        return "1 hour" if hours == 1 else f"{hours} hours"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
        context = ssl.create_default_context()
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

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=mask_email(to_email),
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
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=getattr(exc, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=mask_email(to_email))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def _send_link(
        self,
        to_email: str,
        *,
        subject: str,
        heading: str,
        intro: str,
        action: str,
        path: str,
        token: str,
        lifetime: str,
        outro: str = "If you didn't request this, you can safely ignore this email.",
    ) -> bool:
        fields = {
            "heading": heading,
            "intro": intro,
            "action": action,
            "url": f"{self.base_url}{path}?token={token}",
            "lifetime": lifetime,
            "outro": outro,
            "sender": self.from_name,
        }
        return self._send_email(
            to_email,
            subject,
            _HTML_TEMPLATE.format(**fields),
            _TEXT_TEMPLATE.format(**fields),
        )

    def send_verification_email(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            subject=f"Verify your {self.from_name} account",
            heading="Verify your email",
            intro="Thanks for signing up! Please confirm your email address to activate your account.",
            action="Verify Email",
            path="/api/v1/auth/verify",
            token=token,
            lifetime=self._describe_hours(self.verification_ttl_hours),
        )

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        return self._send_link(
            to_email,
            subject=f"Reset your {self.from_name} password",
            heading="Reset your password",
            intro="We received a request to reset your password. Use the link below to choose a new one.",
            action="Reset Password",
            path="/reset-password",
            token=token,
            lifetime=self._describe_hours(self.password_reset_ttl_hours),
        )

    def send_email_change_verification_email(self, to_email: str, token: str) -> bool:
        """Sent to the new address; the change is committed only when the link is used."""
        return self._send_link(
            to_email,
            subject=f"Confirm your new {self.from_name} email address",
            heading="Confirm your new email",
            intro="Someone asked to move an account to this address. Confirm it to finish the change.",
            action="Confirm Email",
            path="/api/v1/auth/verify-email-change",
            token=token,
            lifetime=self._describe_hours(self.verification_ttl_hours),
            outro="If you didn't ask for this change, ignore this email and the address will not be updated.",
        )
