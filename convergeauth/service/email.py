from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from string import Template
from typing import Any, Dict, Optional

from convergeauth.logging import get_logger, redact_email

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

_HTML_SHELL = Template(
    """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 28px; letter-spacing: 6px; font-weight: 700; }
        .button { display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
    </style>
</head>
<body>
    <div class="container">
        <h1>$heading</h1>
        <p>$intro</p>
        <p class="code">$code</p>
        <p style="margin: 30px 0;">
            <a href="$link" class="button">$button</a>
        </p>
        <p>This code expires in $ttl_minutes minutes.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>$app_name</p>
            <p>If the button doesn't work, copy and paste this URL: $link</p>
        </div>
    </div>
</body>
</html>
"""
)

_TEXT_SHELL = Template(
    """$heading

$intro

    $code

Or open this link:

$link

This code expires in $ttl_minutes minutes.

If you didn't request this, you can safely ignore this email.

---
$app_name
"""
)

# template name -> (subject, heading, intro, button label)
TEMPLATES: Dict[str, tuple[str, str, str, str]] = {
    "signup-otp": (
        "Confirm your $app_name account",
        "Confirm your email",
        "Enter this code to finish creating your account:",
        "Confirm email",
    ),
    "login-otp": (
        "Your $app_name sign-in code",
        "Sign in",
        "Enter this code to sign in, or use the link below:",
        "Sign in",
    ),
    "verification-otp": (
        "Your $app_name verification code",
        "Verify it's you",
        "Enter this code to confirm your identity:",
        "Verify",
    ),
}


class EmailService:
    """Transactional email sender for one-time codes and magic links.

    Falls back to logging when SMTP is not configured (dev mode).
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
        from_name: str = "ConvergeAuth",
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

    def render(self, template: str, data: Dict[str, Any]) -> tuple[str, str, str]:
        """Return ``(subject, html_body, text_body)`` for a named template."""
        if template not in TEMPLATES:
            raise ValueError(f"unknown email template: {template}")
        subject, heading, intro, button = TEMPLATES[template]
        values = {
            "app_name": self.from_name,
            "heading": heading,
            "intro": intro,
            "button": button,
            "code": data.get("code", ""),
            "link": data.get("link", ""),
            "ttl_minutes": data.get("ttl_minutes", 15),
        }
        return (
            Template(subject).safe_substitute(values),
            _HTML_SHELL.safe_substitute(values),
            _TEXT_SHELL.safe_substitute(values),
        )

    async def send(self, to: str, template: str, data: Dict[str, Any]) -> bool:
        """Deliver ``template`` to ``to``; ``False`` means the SMTP hand-off failed."""
        subject, html_body, text_body = self.render(template, data)
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to), template=template)
            return True
        message = self._message(to, subject, html_body, text_body)
        # smtplib blocks; keep it off the event loop
        return await asyncio.to_thread(self._deliver, message)

    def _message(self, to: str, subject: str, html_body: str, text_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
            server.starttls(context=context)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        if self.smtp_user and self.smtp_password:
            server.login(self.smtp_user, self.smtp_password)
        return server

    def _deliver(self, message: EmailMessage) -> bool:
        recipient = redact_email(message["To"])
        try:
            with self._connect() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error("email_auth_failed", to=recipient, host=self.smtp_host, error=str(exc))
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, error=str(exc))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", to=recipient, subject=message["Subject"])
        return True
