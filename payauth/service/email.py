from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from payauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <div style="max-width: 600px; margin: 0 auto; padding: 32px 20px;">
        <h1>{title}</h1>
        {body}
        <p style="margin-top: 40px; font-size: 12px; color: #5b6470;">{sender}</p>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional email for the auth flows.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Recovery codes, lockout notices and password-change confirmations
    - Logging instead of sending when SMTP is not configured (dev mode)
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
        from_name: str = "NaivePay",
        code_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
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
                to=self._redact_email(to_email),
                subject=subject,
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
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _render(self, title: str, paragraphs: list[str]) -> tuple[str, str]:
        html = _HTML_TEMPLATE.format(
            title=title,
            body="".join(f"<p>{p}</p>" for p in paragraphs),
            sender=self.from_name,
        )
        text = "\n\n".join([title, *paragraphs, "---", self.from_name]) + "\n"
        return html, text

    def send_password_recovery_code(self, to_email: str, code: str) -> bool:
        html, text = self._render(
            "Password recovery",
            [
                f"Your password recovery code is: {code}",
                f"The code expires in {self.code_ttl_minutes} minutes.",
                "If you did not request this, you can ignore this email.",
            ],
        )
        return self._send_email(to_email, "Your password recovery code", html, text)

    def send_device_recovery_code(self, to_email: str, code: str) -> bool:
        html, text = self._render(
            "Link a new device",
            [
                f"Use this code to link your new device: {code}",
                f"The code expires in {self.code_ttl_minutes} minutes.",
                "If you did not try to sign in from a new device, change your password.",
            ],
        )
        return self._send_email(to_email, "Your device verification code", html, text)

    def send_account_blocked(self, to_email: str) -> bool:
        html, text = self._render(
            "Your account has been blocked",
            [
                "We blocked your account after too many failed sign-in attempts.",
                "Recover your password to unblock it.",
            ],
        )
        return self._send_email(to_email, "Account blocked", html, text)

    def send_password_changed(self, to_email: str) -> bool:
        html, text = self._render(
            "Password changed",
            [
                "Your password was changed and all open sessions were closed.",
                "If this was not you, contact support immediately.",
            ],
        )
        return self._send_email(to_email, "Your password was changed", html, text)

    def send_welcome(self, to_email: str) -> bool:
        html, text = self._render(
            "Welcome",
            ["Your account is ready. Sign in from your device to link it."],
        )
        return self._send_email(to_email, "Welcome to NaivePay", html, text)
