from __future__ import annotations

import smtplib
import socket
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from billing_orchestrator.email_sender import SmtpEmailSender, StubEmailSender, mask_email


def _make_sender(*, username: str = "mailer", use_tls: bool = True) -> SmtpEmailSender:
    return SmtpEmailSender(
        host="smtp.mail.test",
        port=2525,
        from_address="billing@company.test",
        username=username,
        password="mail-secret",
        use_tls=use_tls,
        timeout_seconds=10,
    )


def _mock_smtp(mock_smtp_cls: MagicMock) -> MagicMock:
    client = MagicMock()
    mock_smtp_cls.return_value.__enter__.return_value = client
    mock_smtp_cls.return_value.__exit__.return_value = False
    return client


@patch("billing_orchestrator.email_sender.smtplib.SMTP")
def test_smtp_sender_success(mock_smtp_cls: MagicMock) -> None:
    client = _mock_smtp(mock_smtp_cls)
    sender = _make_sender()

    result = sender.send("client@example.com", "Bill No. BN-1", "Please see attached.", "inv_123")

    assert result.status == "SENT"
    assert result.attempted_at.tzinfo == timezone.utc
    assert result.provider_message_id is not None
    assert "inv_123" in result.provider_message_id
    mock_smtp_cls.assert_called_once_with("smtp.mail.test", 2525, timeout=10)
    client.starttls.assert_called_once()
    client.login.assert_called_once_with("mailer", "mail-secret")
    message = client.send_message.call_args.args[0]
    assert message["To"] == "client@example.com"
    assert message["From"] == "billing@company.test"
    assert message["Subject"] == "Bill No. BN-1"


@patch("billing_orchestrator.email_sender.smtplib.SMTP")
def test_smtp_sender_skips_tls_and_login_when_not_configured(mock_smtp_cls: MagicMock) -> None:
    client = _mock_smtp(mock_smtp_cls)
    sender = _make_sender(username="", use_tls=False)

    result = sender.send("client@example.com", "subject", "body", "inv_1")

    assert result.status == "SENT"
    client.starttls.assert_not_called()
    client.login.assert_not_called()


@patch("billing_orchestrator.email_sender.smtplib.SMTP")
def test_smtp_sender_recipient_refused(mock_smtp_cls: MagicMock) -> None:
    client = _mock_smtp(mock_smtp_cls)
    client.send_message.side_effect = smtplib.SMTPRecipientsRefused({"client@example.com": (550, b"no such user")})
    sender = _make_sender()

    result = sender.send("client@example.com", "subject", "body", "inv_1")

    assert result.status == "FAILED"
    assert result.error_code == "recipient_refused"
    assert "550" in (result.error_message or "")
    assert "c***@example.com" in (result.error_message or "")
    assert "client@example.com" not in (result.error_message or "")


@patch("billing_orchestrator.email_sender.smtplib.SMTP")
def test_smtp_sender_auth_failure(mock_smtp_cls: MagicMock) -> None:
    client = _mock_smtp(mock_smtp_cls)
    client.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
    sender = _make_sender()

    result = sender.send("client@example.com", "subject", "body", "inv_1")

    assert result.status == "FAILED"
    assert result.error_code == "smtp_auth_failed"


@patch("billing_orchestrator.email_sender.smtplib.SMTP")
def test_smtp_sender_timeout(mock_smtp_cls: MagicMock) -> None:
    mock_smtp_cls.side_effect = socket.timeout("timed out")
    sender = _make_sender()

    result = sender.send("client@example.com", "subject", "body", "inv_1")

    assert result.status == "FAILED"
    assert result.error_code == "timeout"


@patch("billing_orchestrator.email_sender.smtplib.SMTP")
def test_smtp_sender_connection_refused(mock_smtp_cls: MagicMock) -> None:
    mock_smtp_cls.side_effect = ConnectionRefusedError("connection refused")
    sender = _make_sender()

    result = sender.send("client@example.com", "subject", "body", "inv_1")

    assert result.status == "FAILED"
    assert result.error_code == "connection_error"


def test_smtp_sender_rejects_empty_host() -> None:
    with pytest.raises(ValueError, match="host"):
        SmtpEmailSender(host=" ", port=25, from_address="billing@company.test")


def test_stub_sender_disabled_fails_without_recording() -> None:
    sender = StubEmailSender(enabled=False)

    result = sender.send("client@example.com", "subject", "body", "inv_1")

    assert result.status == "FAILED"
    assert result.error_code == "email_disabled"
    assert sender.sent == []


def test_mask_email() -> None:
    assert mask_email("client@example.com") == "c***@example.com"
    assert mask_email("a@example.com") == "*@example.com"
    assert mask_email("") == "***"
