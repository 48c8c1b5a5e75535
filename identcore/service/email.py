from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from identcore.config import Settings
from identcore.logging import get_logger, redact_email

logger = get_logger(__name__)

_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 560px; margin: 0 auto; padding: 32px 20px; }}
        .code {{ font-size: 28px; letter-spacing: 6px; font-weight: 700; margin: 24px 0; }}
        .footer {{ margin-top: 32px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {body}
        <div class="footer"><p>{sender}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for verification codes and account notices.

    With no SMTP host configured the message is logged instead of sent, which
    is the normal mode for local development and tests.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        timeout_seconds: float = 30.0,
        from_email: Optional[str] = None,
        from_name: str = "Identcore",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.timeout_seconds = timeout_seconds
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.smtp_timeout_seconds,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, title: str, paragraphs: list[str], code: Optional[str] = None) -> tuple[str, str]:
        blocks = [f"<p>{html.escape(p)}</p>" for p in paragraphs]
        if code:
            blocks.insert(1, f'<p class="code">{html.escape(code)}</p>')
        html_body = _HTML_TEMPLATE.format(
            title=html.escape(title),
            body="\n        ".join(blocks),
            sender=html.escape(self.from_name),
        )
        text_lines = [title, ""] + paragraphs[:1]
        if code:
            text_lines += ["", f"    {code}", ""]
        text_lines += paragraphs[1:] + ["", "---", self.from_name]
        return html_body, "\n".join(text_lines)

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send one message; returns False on any delivery failure."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout_seconds) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout_seconds
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_registration_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Confirm your email",
            [
                "Enter this code to finish creating your account:",
                f"The code expires in {ttl_minutes} minutes.",
                "If you did not sign up, you can ignore this message.",
            ],
            code=code,
        )
        return self._send_email(to_email, "Your verification code", html_body, text_body)

    def send_password_reset_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            "Reset your password",
            [
                "Enter this code to choose a new password:",
                f"The code expires in {ttl_minutes} minutes.",
                "If you did not ask for a reset, your password is unchanged.",
            ],
            code=code,
        )
        return self._send_email(to_email, "Your password reset code", html_body, text_body)

    def send_password_changed(self, to_email: str) -> bool:
        html_body, text_body = self._render(
            "Your password was changed",
            [
                "The password for your account was just changed and all devices were signed out.",
                "If this was not you, reset your password immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html_body, text_body)
