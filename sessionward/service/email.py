from __future__ import annotations

import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional

from sessionward.logging import get_logger

logger = get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 30

RESET_SUBJECT = "Your password reset code"
RESET_TEMPLATE = """\
We received a request to reset your password.

Your reset code is: {code}

The code expires in {minutes} minutes and can be used once.
No action is needed if the request was not yours; your password stays unchanged.
"""


def mask_address(address: str) -> str:
    local, sep, domain = address.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


class EmailService:
    """Delivers password reset codes over SMTP.

    Without an SMTP host the message is dropped and only its envelope is
    logged, which is how development and test runs behave.
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
        from_name: str = "Sessionward",
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

    def _connect(self) -> smtplib.SMTP:
        """Open an authenticated connection; STARTTLS when smtp_use_tls, implicit TLS otherwise."""
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except Exception:
            server.close()
            raise
        return server

    def deliver(self, message: EmailMessage) -> bool:
        """Send ``message``; False when the SMTP exchange fails."""
        recipient = mask_address(message["To"])
        if not self.is_configured:
            logger.info("email_not_configured", recipient=recipient, subject=message["Subject"])
            return True
        try:
            with self._connect() as server:
                server.send_message(message)
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed",
                recipient=recipient,
                host=self.smtp_host,
                smtp_status=getattr(exc, "smtp_code", None),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "email_send_failed",
                recipient=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        logger.info("email_sent", recipient=recipient, subject=message["Subject"])
        return True

    def send_password_reset(self, to_email: str, reset_code: str, *, expires_in_minutes: int) -> bool:
        message = EmailMessage()
        message["Subject"] = RESET_SUBJECT
        message["From"] = f"{self.from_name} <{self.from_email or 'no-reply@localhost'}>"
        message["To"] = to_email
        message.set_content(RESET_TEMPLATE.format(code=reset_code, minutes=expires_in_minutes))
        return self.deliver(message)
