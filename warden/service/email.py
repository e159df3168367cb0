from __future__ import annotations

import smtplib
import ssl
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from warden.logging import get_logger

logger = get_logger(__name__)

_HTML_FRAME = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #1d4ed8; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        {content}
        <div class="footer">
            <p>{sender}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for the account lifecycle.

    Supports:
    - SMTP with TLS/SSL
    - New-login notifications, sent on a background thread
    - Password reset and welcome emails
    - Confirmation of a changed email address
    - Fallback to logging when not configured (dev mode)

    Every send returns a bool; delivery problems are logged, never raised.
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
        from_name: str = "Warden",
        base_url: Optional[str] = None,
        reset_token_ttl_minutes: int = 24 * 60,
        max_workers: int = 2,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"
        self.reset_token_ttl_minutes = reset_token_ttl_minutes
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="warden-mail"
        )

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

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
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
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
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    def _render(self, content: str) -> str:
        return _HTML_FRAME.format(content=content, sender=self.from_name)

    def send_login_notification(
        self,
        to_email: str,
        *,
        user_agent: Optional[str] = None,
        when: Optional[datetime] = None,
        locale: str = "de",
    ) -> bool:
        """Tell the account owner that a new session was opened."""
        stamp = when.strftime("%Y-%m-%d %H:%M UTC") if when else "just now"
        device = user_agent or "an unknown device"
        subject = "New sign-in to your account"
        html_body = self._render(
            f"""<h1>New sign-in</h1>
        <p>Your account was signed in on {stamp} from {device}.</p>
        <p>If this wasn't you, reset your password and end all sessions.</p>"""
        )
        text_body = f"""New sign-in

Your account was signed in on {stamp} from {device}.

If this wasn't you, reset your password and end all sessions.
"""
        logger.debug("login_notification_prepared", locale=locale)
        return self._send_email(to_email, subject, html_body, text_body)

    def send_login_notification_async(
        self,
        to_email: str,
        *,
        user_agent: Optional[str] = None,
        when: Optional[datetime] = None,
        locale: str = "de",
    ) -> Future:
        future = self._executor.submit(
            self.send_login_notification,
            to_email,
            user_agent=user_agent,
            when=when,
            locale=locale,
        )
        future.add_done_callback(self._log_async_failure)
        return future

    @staticmethod
    def _log_async_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.warning("login_notification_failed", error=str(exc))

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/?reset_token={token}"
        subject = "Reset your password"
        html_body = self._render(
            f"""<h1>Reset your password</h1>
        <p>We received a request to reset your password. Click the button below to choose a new password:</p>
        <p style="margin: 30px 0;">
            <a href="{reset_url}" class="button">Reset Password</a>
        </p>
        <p>This link will expire in {self.reset_token_ttl_minutes} minutes.</p>
        <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>"""
        )
        text_body = f"""Reset your password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in {self.reset_token_ttl_minutes} minutes.

If you didn't request this, you can safely ignore this email.
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, token: str) -> bool:
        """Invite a new user to set their first password."""
        setup_url = f"{self.base_url}/?reset_token={token}"
        subject = "Your new account"
        html_body = self._render(
            f"""<h1>Welcome</h1>
        <p>An account was created for you. Choose a password to get started:</p>
        <p style="margin: 30px 0;">
            <a href="{setup_url}" class="button">Set Password</a>
        </p>
        <p>If the button doesn't work, copy and paste this URL: {setup_url}</p>"""
        )
        text_body = f"""Welcome

An account was created for you. Choose a password to get started:

{setup_url}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        """Ask the owner of a new address to confirm it before the account switches over."""
        verify_url = f"{self.base_url}/?verify_token={token}"
        subject = "Confirm your new email address"
        html_body = self._render(
            f"""<h1>Confirm your email address</h1>
        <p>This address was entered as the new sign-in email for your account. Confirm it to complete the change:</p>
        <p style="margin: 30px 0;">
            <a href="{verify_url}" class="button">Confirm Email</a>
        </p>
        <p>Until you confirm, you keep signing in with your current address.</p>
        <p>If the button doesn't work, copy and paste this URL: {verify_url}</p>"""
        )
        text_body = f"""Confirm your email address

This address was entered as the new sign-in email for your account. Visit the link below to complete the change:

{verify_url}

Until you confirm, you keep signing in with your current address.
"""
        return self._send_email(to_email, subject, html_body, text_body)
