from __future__ import annotations

import smtplib
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Literal, Protocol

EmailSendStatus = Literal["SENT", "FAILED"]


@dataclass(frozen=True)
class EmailSendResult:
    status: EmailSendStatus
    attempted_at: datetime
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class EmailSender(Protocol):
    def send(self, to: str, subject: str, body: str, correlation_id: str) -> EmailSendResult: ...


class StubEmailSender:
    """Records sends in memory; recipients containing "fail" are rejected."""

    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self.sent: list[tuple[str, str, str]] = []

    def send(self, to: str, subject: str, body: str, correlation_id: str) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return EmailSendResult(
                status="FAILED",
                attempted_at=attempted_at,
                error_code="email_disabled",
                error_message="Email delivery is disabled",
            )

        if "fail" in to.lower():
            return EmailSendResult(
                status="FAILED",
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error_message="Stub sender forced failure for recipient",
            )

        self.sent.append((to, subject, correlation_id))
        message_id = f"stub-{correlation_id}-{int(attempted_at.timestamp())}"
        return EmailSendResult(status="SENT", attempted_at=attempted_at, provider_message_id=message_id)


class SmtpEmailSender:
    """Delivers billing mail through an SMTP relay."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        from_address: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_host = host.strip()
        if not stripped_host:
            raise ValueError("host must not be empty")
        if "@" not in from_address:
            raise ValueError("from_address must be an email address")
        self._host = stripped_host
        self._port = port
        self._from_address = from_address.strip()
        self._username = username.strip()
        self._password = password
        self._use_tls = use_tls
        self._timeout_seconds = timeout_seconds

    def send(self, to: str, subject: str, body: str, correlation_id: str) -> EmailSendResult:
        attempted_at = datetime.now(timezone.utc)
        message = EmailMessage()
        message["From"] = self._from_address
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(idstring=correlation_id)
        message.set_content(body)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout_seconds) as client:
                if self._use_tls:
                    client.starttls()
                if self._username:
                    client.login(self._username, self._password)
                client.send_message(message)
        except smtplib.SMTPRecipientsRefused as exc:
            codes = sorted(code for code, _ in exc.recipients.values())
            return self._failed(attempted_at, "recipient_refused", f"Recipient refused with SMTP codes {codes}", to)
        except smtplib.SMTPAuthenticationError as exc:
            return self._failed(attempted_at, "smtp_auth_failed", f"SMTP authentication failed: {exc.smtp_code}", to)
        except smtplib.SMTPException as exc:
            return self._failed(attempted_at, "smtp_error", f"SMTP error: {exc}", to)
        except (socket.timeout, TimeoutError) as exc:
            return self._failed(attempted_at, "timeout", f"SMTP request timed out: {exc}", to)
        except OSError as exc:
            return self._failed(attempted_at, "connection_error", f"Connection error: {exc}", to)

        return EmailSendResult(
            status="SENT",
            attempted_at=attempted_at,
            provider_message_id=str(message["Message-ID"]),
        )

    @staticmethod
    def _failed(attempted_at: datetime, error_code: str, message: str, recipient: str) -> EmailSendResult:
        return EmailSendResult(
            status="FAILED",
            attempted_at=attempted_at,
            error_code=error_code,
            error_message=f"{message} (recipient: {mask_email(recipient)})",
        )


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
