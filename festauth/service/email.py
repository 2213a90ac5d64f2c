from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol
from urllib.parse import quote

from festauth.config import Settings
from festauth.logging import get_logger

logger = get_logger(__name__)


class EmailDispatcher(Protocol):
    """Transactional mail sink used by the authentication flows.

    Implementations return False on failure instead of raising; callers log
    the failure and carry on.
    """

    def send_email_verification(self, to_email: str, display_name: str, token: str) -> bool: ...

    def send_password_reset(self, to_email: str, display_name: str, token: str) -> bool: ...

    def send_password_changed(self, to_email: str, display_name: str) -> bool: ...

    def send_invitation(
        self,
        to_email: str,
        festival_name: str,
        inviter_name: str,
        role: str,
        is_new_user: bool,
    ) -> bool: ...


_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; margin: 0; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: #6366f1; color: white; padding: 20px; text-align: center; border-radius: 8px 8px 0 0; }}
        .content {{ background: #f9fafb; padding: 30px; border-radius: 0 0 8px 8px; }}
        .button {{ display: inline-block; background: #6366f1; color: white; padding: 12px 24px; border-radius: 6px; text-decoration: none; }}
        .footer {{ margin-top: 20px; font-size: 12px; color: #6b7280; text-align: center; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{brand}</h1></div>
        <div class="content">
            <h2>{title}</h2>
            {content}
        </div>
        <div class="footer">
            <p>This email was sent by {brand}. If you didn't expect it, you can safely ignore it.</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP implementation of :class:`EmailDispatcher`.

    When no SMTP host or sender is configured the message is logged instead of
    sent (``email_dev_mode``) and the send counts as successful.
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
        from_name: str = "FestConnect",
        base_url: Optional[str] = None,
        verification_ttl_hours: int = 24,
        reset_ttl_hours: int = 1,
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
        self.reset_ttl_hours = reset_ttl_hours

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
            verification_ttl_hours=settings.email_verification_ttl_hours,
            reset_ttl_hours=settings.password_reset_ttl_hours,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _link(self, path: str, token: str) -> str:
        return f"{self.base_url}/{path}?token={quote(token, safe='')}"

    @staticmethod
    def _hours(count: int) -> str:
        return "1 hour" if count == 1 else f"{count} hours"

    def _render(self, title: str, content: str) -> str:
        return _TEMPLATE.format(
            brand=html.escape(self.from_name), title=html.escape(title), content=content
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        if not self.is_configured:
            # Body previews would expose token links, so only the subject is logged
            logger.info(
                "email_dev_mode", to=self._redact_email(to_email), subject=subject
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
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
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
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, display_name: str, token: str) -> bool:
        url = self._link("verify-email", token)
        expiry = self._hours(self.verification_ttl_hours)
        content = f"""
            <p>Hi {html.escape(display_name)},</p>
            <p>Please verify your email address by clicking the button below:</p>
            <p><a href="{url}" class="button">Verify Email</a></p>
            <p>This link will expire in {expiry}.</p>
            <p>If you didn't create an account, you can ignore this email.</p>
        """
        text_body = (
            f"Hi {display_name},\n\n"
            f"Please verify your email address by visiting:\n\n{url}\n\n"
            f"This link will expire in {expiry}.\n"
        )
        return self._send_email(
            to_email,
            f"Verify your {self.from_name} account",
            self._render("Verify Your Email", content),
            text_body,
        )

    def send_password_reset(self, to_email: str, display_name: str, token: str) -> bool:
        url = self._link("reset-password", token)
        expiry = self._hours(self.reset_ttl_hours)
        content = f"""
            <p>Hi {html.escape(display_name)},</p>
            <p>We received a request to reset your password. Click the button below to set a new password:</p>
            <p><a href="{url}" class="button">Reset Password</a></p>
            <p>This link will expire in {expiry}.</p>
            <p>If you didn't request a password reset, you can ignore this email.</p>
        """
        text_body = (
            f"Hi {display_name},\n\n"
            f"We received a request to reset your password. Visit the link below to set a new one:\n\n{url}\n\n"
            f"This link will expire in {expiry}.\n"
        )
        return self._send_email(
            to_email,
            f"Reset your {self.from_name} password",
            self._render("Reset Your Password", content),
            text_body,
        )

    def send_password_changed(self, to_email: str, display_name: str) -> bool:
        content = f"""
            <p>Hi {html.escape(display_name)},</p>
            <p>Your password has been successfully changed.</p>
            <p>If you didn't make this change, please contact support immediately.</p>
        """
        text_body = (
            f"Hi {display_name},\n\n"
            "Your password has been successfully changed.\n"
            "If you didn't make this change, please contact support immediately.\n"
        )
        return self._send_email(
            to_email,
            f"Your {self.from_name} password has been changed",
            self._render("Password Changed", content),
            text_body,
        )

    def send_invitation(
        self,
        to_email: str,
        festival_name: str,
        inviter_name: str,
        role: str,
        is_new_user: bool,
    ) -> bool:
        if is_new_user:
            next_step = (
                f"To accept this invitation, create a {self.from_name} account first. "
                "Once registered, you'll have access to the festival."
            )
        else:
            next_step = f"Log in to your {self.from_name} account to access the festival."
        content = f"""
            <p><strong>{html.escape(inviter_name)}</strong> has invited you to join
               <strong>{html.escape(festival_name)}</strong> as a team member.</p>
            <p>Your role: <strong>{html.escape(role)}</strong></p>
            <p>{html.escape(next_step)}</p>
            <p><a href="{self.base_url}/" class="button">Open {html.escape(self.from_name)}</a></p>
        """
        text_body = (
            f"{inviter_name} has invited you to join {festival_name} as a team member.\n"
            f"Your role: {role}\n\n{next_step}\n\n{self.base_url}/\n"
        )
        return self._send_email(
            to_email,
            f"You've been invited to join {festival_name} on {self.from_name}",
            self._render("You're Invited!", content),
            text_body,
        )
