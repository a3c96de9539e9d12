"""
auth/mailer.py -- Out-of-band delivery of verification codes.

SMTPMailer sends over SMTP (implicit TLS by default, STARTTLS when
smtp_use_ssl is false) with a hard socket timeout, so a slow or dead mail
server can never stall a request handler indefinitely.

Any delivery failure is raised as DispatchFailedError. CodeIssuer reacts by
rolling back the issuance, so the system never believes an undelivered code
reached the user.

When SMTP is not configured (empty SMTP_HOST) the mailer runs in development
mode: the message is written to the log instead of being sent.

Layer rule: no imports from api/. Settings are passed in, not read here.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Protocol

from auth.errors import DispatchFailedError
from auth.models import CodePurpose

logger = logging.getLogger("strmauth.mailer")

_SUBJECTS = {
    CodePurpose.ACTIVATION: "StrmAuth account verification code",
    CodePurpose.PASSWORD_RESET: "StrmAuth password reset code",
}


class CodeDispatcher(Protocol):
    def send_code(self, email: str, code: str, purpose: CodePurpose, expires_in: int) -> None: ...


def redact_email(email: str) -> str:
    """Redact an email address for logging: al***@example.com."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def render_code_message(code: str, purpose: CodePurpose, expires_in: int) -> str:
    minutes = max(1, expires_in // 60)
    action = "activate your account" if purpose is CodePurpose.ACTIVATION else "reset your password"
    return (
        f"Your StrmAuth verification code is {code}.\n\n"
        f"Use it to {action}. It expires in {minutes} minutes and can be used once.\n"
        "If you did not request this code, you can ignore this email."
    )


class SMTPMailer:
    """CodeDispatcher backed by smtplib."""

    def __init__(
        self,
        *,
        host: str = "",
        port: int = 465,
        username: str = "",
        password: str = "",
        use_ssl: bool = True,
        sender: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.sender = sender or username
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def send_code(self, email: str, code: str, purpose: CodePurpose, expires_in: int) -> None:
        message = EmailMessage()
        message["Subject"] = _SUBJECTS[purpose]
        message["From"] = self.sender or "strmauth@localhost"
        message["To"] = email
        message.set_content(render_code_message(code, purpose, expires_in))

        if not self.is_configured:
            logger.info(
                "Mail not configured; development delivery to %s:\n%s",
                redact_email(email),
                message.get_content(),
            )
            return

        try:
            self._deliver(message)
        except (smtplib.SMTPException, OSError) as exc:
            # OSError covers refused connections and socket timeouts.
            logger.error("Mail delivery to %s failed: %s", redact_email(email), exc)
            raise DispatchFailedError() from exc
        logger.info("Sent %s code to %s", purpose.value, redact_email(email))

    def _deliver(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.use_ssl:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                self._login_and_send(server, message)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                self._login_and_send(server, message)

    def _login_and_send(self, server: smtplib.SMTP, message: EmailMessage) -> None:
        if self.username and self.password:
            server.login(self.username, self.password)
        server.send_message(message)
