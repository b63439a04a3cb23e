from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from .errors import BillingValidationError, InvalidTransitionError, UnknownPaymentRequestError
from .models import InvoiceStatus, PaymentRequestStatus, ReconciliationOutcome
from .notifications import AuditTrail, NotificationSink, notify_safely
from .state_machine import PAYABLE_STATUSES, InvoiceStateMachine
from .store import BillingStore, PaymentRequestRecord, PaymentStatusPatch, _coerce_utc, _now_utc

logger = logging.getLogger(__name__)

TERMINAL_PAYMENT_STATUSES: frozenset[PaymentRequestStatus] = frozenset({"COMPLETED", "FAILED", "EXPIRED"})

_GATEWAY_STATUS_ALIASES: dict[str, PaymentRequestStatus] = {
    "pending": "PENDING",
    "completed": "COMPLETED",
    "succeeded": "COMPLETED",
    "paid": "COMPLETED",
    "failed": "FAILED",
    "expired": "EXPIRED",
}


def normalize_gateway_status(value: str) -> PaymentRequestStatus:
    normalized = _GATEWAY_STATUS_ALIASES.get(value.strip().lower())
    if normalized is None:
        raise BillingValidationError(f"unsupported payment status: {value}")
    return normalized


def is_forward_move(stored: PaymentRequestStatus, reported: PaymentRequestStatus) -> bool:
    return stored == "PENDING" and reported in TERMINAL_PAYMENT_STATUSES


@dataclass(frozen=True)
class PaymentCallback:
    external_request_id: str
    status: str
    timestamp: datetime | None = None
    payment_method: str | None = None
    payment_reference: str | None = None


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    payment_request: PaymentRequestRecord
    invoice_status: InvoiceStatus | None = None


class PaymentReconciler:
    def __init__(
        self,
        *,
        store: BillingStore,
        state_machine: InvoiceStateMachine,
        notifications: NotificationSink,
        audit: AuditTrail,
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._notifications = notifications
        self._audit = audit

    def reconcile(self, callback: PaymentCallback) -> ReconciliationResult:
        reported = normalize_gateway_status(callback.status)
        payment_request = self._store.get_payment_request_by_external_id(callback.external_request_id)
        if payment_request is None:
            logger.warning("payment callback for unknown request %s", callback.external_request_id)
            raise UnknownPaymentRequestError(callback.external_request_id)

        if not is_forward_move(payment_request.status, reported):
            if payment_request.status == "COMPLETED":
                settled = self._resettle_completed(payment_request)
                if settled is not None:
                    return settled
            logger.info(
                "ignoring %s callback for payment request %s already %s",
                reported,
                payment_request.payment_request_id,
                payment_request.status,
            )
            return ReconciliationResult(
                outcome="ignored",
                payment_request=payment_request,
                invoice_status=self._invoice_status(payment_request.invoice_id),
            )

        reported_at = _coerce_utc(callback.timestamp) if callback.timestamp is not None else _now_utc()
        advanced = self._store.advance_payment_request(
            payment_request.payment_request_id,
            expected_status=payment_request.status,
            patch=PaymentStatusPatch(
                status=reported,
                payment_method=callback.payment_method,
                payment_reference=callback.payment_reference,
                paid_at=reported_at if reported == "COMPLETED" else None,
            ),
        )
        if advanced is None:
            # A concurrent callback moved it first.
            latest = self._store.get_payment_request_by_external_id(callback.external_request_id) or payment_request
            return ReconciliationResult(
                outcome="ignored",
                payment_request=latest,
                invoice_status=self._invoice_status(latest.invoice_id),
            )

        self._audit.record(f"PAYMENT_{reported}", entity_type="PaymentRequest", entity_id=advanced.payment_request_id,
                           details={"invoice_id": advanced.invoice_id, "external_request_id": advanced.external_request_id})
        if reported == "COMPLETED":
            invoice_status = self._settle_invoice(advanced, reported_at)
        else:
            invoice_status = self._invoice_status(advanced.invoice_id)
            notify_safely(self._notifications, None, "PAYMENT_FAILED", {
                "invoice_id": advanced.invoice_id,
                "message": (
                    f"Payment request {advanced.external_request_id} ended as {reported}; "
                    "a new payment request is needed"
                ),
                "payment_status": reported,
            })
        return ReconciliationResult(outcome="applied", payment_request=advanced, invoice_status=invoice_status)

    def _resettle_completed(self, payment_request: PaymentRequestRecord) -> ReconciliationResult | None:
        # A completed request whose invoice never reached PAID (mark_paid failed after the CAS) is settled on retry.
        invoice = self._store.get_invoice(payment_request.invoice_id)
        if invoice is None or invoice.status not in PAYABLE_STATUSES:
            return None
        logger.warning(
            "payment request %s is COMPLETED but invoice %s is still %s; settling again",
            payment_request.payment_request_id,
            invoice.invoice_id,
            invoice.status,
        )
        invoice_status = self._settle_invoice(payment_request, payment_request.paid_at or _now_utc())
        return ReconciliationResult(outcome="applied", payment_request=payment_request, invoice_status=invoice_status)

    def _settle_invoice(self, payment_request: PaymentRequestRecord, paid_at: datetime) -> InvoiceStatus | None:
        try:
            result = self._state_machine.mark_paid(
                payment_request.invoice_id,
                payment_request.payment_request_id,
                now=paid_at,
            )
        except InvalidTransitionError as exc:
            logger.warning(
                "payment %s completed but invoice %s cannot be marked paid from %s",
                payment_request.external_request_id,
                exc.invoice_id,
                exc.current_status,
            )
            notify_safely(self._notifications, None, "SYSTEM", {
                "invoice_id": payment_request.invoice_id,
                "title": "Payment Needs Review",
                "message": f"Payment received for invoice in status {exc.current_status}",
            })
            return exc.current_status  # type: ignore[return-value]
        return result.invoice.status

    def _invoice_status(self, invoice_id: str) -> InvoiceStatus | None:
        invoice = self._store.get_invoice(invoice_id)
        return invoice.status if invoice is not None else None
