from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .email_sender import EmailSender, EmailSendResult, mask_email
from .models import EmailKind
from .store import BillingStore, EmailLogRecord, EmailResultPatch, InvoiceRecord, new_record_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    email_log: EmailLogRecord
    result: EmailSendResult


class EmailDelivery:
    """Sends one email and brackets it with an EmailLog (QUEUED, then SENT or FAILED)."""

    def __init__(self, *, store: BillingStore, sender: EmailSender) -> None:
        self._store = store
        self._sender = sender

    def deliver(
        self,
        invoice: InvoiceRecord,
        *,
        recipient: str,
        kind: EmailKind,
        subject: str,
        body: str,
        correlation_id: str,
        now: datetime,
    ) -> DeliveryReceipt:
        queued = self._store.insert_email_log(
            EmailLogRecord(
                email_log_id=new_record_id("eml"),
                invoice_id=invoice.invoice_id,
                kind=kind,
                recipient=recipient,
                subject=subject,
                status="QUEUED",
                created_at=now,
            )
        )
        try:
            result = self._sender.send(recipient, subject, body, correlation_id)
        except Exception as exc:
            # Senders report failures as results; anything raised still closes the QUEUED log.
            logger.exception("email sender raised for %s email on invoice %s", kind, invoice.invoice_id)
            result = EmailSendResult(
                status="FAILED",
                attempted_at=now,
                error_code="sender_error",
                error_message=f"Email sender raised {exc.__class__.__name__}",
            )
        if result.status == "SENT":
            patch = EmailResultPatch(
                status="SENT",
                provider_message_id=result.provider_message_id,
                error_message=None,
                sent_at=result.attempted_at,
            )
        else:
            logger.warning(
                "email %s for invoice %s to %s failed: %s",
                kind,
                invoice.invoice_id,
                mask_email(recipient),
                result.error_code,
            )
            patch = EmailResultPatch(
                status="FAILED",
                provider_message_id=None,
                error_message=result.error_message or result.error_code,
                sent_at=None,
            )
        completed = self._store.complete_email_log(queued.email_log_id, patch)
        return DeliveryReceipt(email_log=completed or queued, result=result)
