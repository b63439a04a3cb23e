from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal

from .config import BillingConfig
from .delivery import EmailDelivery
from .email_sender import mask_email
from .errors import (
    BillingValidationError,
    DeliveryError,
    InvalidTransitionError,
    InvoiceNotFoundError,
)
from .models import InvoiceStatus, to_money
from .notifications import AuditTrail, NotificationSink, notify_safely
from .payment_gateway import PaymentGatewayClient
from .store import (
    AlreadyExists,
    ApprovalPatch,
    BillingStore,
    EmailLogRecord,
    FollowUpSettingsPatch,
    InvoiceRecord,
    InvoiceTransitionPatch,
    PaidPatch,
    PaymentRequestRecord,
    RejectionPatch,
    ResubmissionPatch,
    SentPatch,
    SubmissionPatch,
    _coerce_utc,
    _now_utc,
    new_record_id,
)
from .templates import render_invoice_email

logger = logging.getLogger(__name__)

# operation -> (statuses the operation may start from, status it ends in)
INVOICE_TRANSITIONS: dict[str, tuple[frozenset[InvoiceStatus], InvoiceStatus]] = {
    "submit": (frozenset({"DRAFT"}), "PENDING_APPROVAL"),
    "approve": (frozenset({"PENDING_APPROVAL"}), "APPROVED"),
    "reject": (frozenset({"PENDING_APPROVAL"}), "REJECTED"),
    "resubmit": (frozenset({"REJECTED"}), "PENDING_APPROVAL"),
    "mark_sent": (frozenset({"APPROVED"}), "SENT"),
    "mark_paid": (frozenset({"APPROVED", "SENT"}), "PAID"),
}

PAYABLE_STATUSES: frozenset[InvoiceStatus] = frozenset({"APPROVED", "SENT"})


def allowed_operations(status: InvoiceStatus) -> tuple[str, ...]:
    return tuple(operation for operation, (sources, _) in INVOICE_TRANSITIONS.items() if status in sources)


def is_terminal(invoice: InvoiceRecord) -> bool:
    if invoice.status == "PAID":
        return True
    return invoice.status == "REJECTED" and invoice.reschedule_date is None


@dataclass(frozen=True)
class InvoiceDraft:
    billing_no: str
    customer_name: str
    amount: Decimal
    customer_email: str | None = None
    partner_id: str | None = None
    currency: str | None = None
    due_date: date | None = None
    auto_send_enabled: bool = True
    follow_up_enabled: bool = True


@dataclass(frozen=True)
class TransitionResult:
    invoice: InvoiceRecord
    changed: bool


@dataclass(frozen=True)
class DispatchOutcome:
    invoice: InvoiceRecord
    changed: bool
    email_log: EmailLogRecord | None = None
    delivery_error: DeliveryError | None = None


@dataclass(frozen=True)
class PaymentRequestOutcome:
    payment_request: PaymentRequestRecord
    created: bool


class InvoiceStateMachine:
    def __init__(
        self,
        *,
        store: BillingStore,
        delivery: EmailDelivery,
        gateway: PaymentGatewayClient,
        notifications: NotificationSink,
        audit: AuditTrail,
        config: BillingConfig,
    ) -> None:
        self._store = store
        self._delivery = delivery
        self._gateway = gateway
        self._notifications = notifications
        self._audit = audit
        self._config = config

    def get(self, invoice_id: str) -> InvoiceRecord:
        invoice = self._store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def create_invoice(self, draft: InvoiceDraft, *, now: datetime | None = None) -> InvoiceRecord:
        billing_no = draft.billing_no.strip()
        customer_name = draft.customer_name.strip()
        if not billing_no:
            raise BillingValidationError("billing_no is required")
        if not customer_name:
            raise BillingValidationError("customer_name is required")
        amount = to_money(draft.amount)
        if amount <= 0:
            raise BillingValidationError("amount must be greater than zero")

        current = _coerce_utc(now) if now is not None else _now_utc()
        record = InvoiceRecord(
            invoice_id=new_record_id("inv"),
            billing_no=billing_no,
            customer_name=customer_name,
            customer_email=draft.customer_email,
            partner_id=draft.partner_id,
            amount=amount,
            currency=(draft.currency or self._config.default_currency).upper(),
            due_date=draft.due_date,
            status="DRAFT",
            created_at=current,
            updated_at=current,
            auto_send_enabled=draft.auto_send_enabled,
            follow_up_enabled=draft.follow_up_enabled,
        )
        outcome = self._store.insert_invoice(record)
        if isinstance(outcome, AlreadyExists):
            raise BillingValidationError(f"billing_no already exists: {billing_no}")
        self._audit.record("INVOICE_CREATED", entity_type="Invoice", entity_id=record.invoice_id,
                           details={"billing_no": billing_no, "amount": amount})
        return outcome.record

    def submit_for_approval(self, invoice_id: str) -> TransitionResult:
        result = self._transition(invoice_id, "submit", SubmissionPatch())
        if result.changed:
            invoice = result.invoice
            self._audit.record("INVOICE_SUBMITTED", entity_type="Invoice", entity_id=invoice_id)
            notify_safely(self._notifications, "approver", "INVOICE_PENDING", {
                "invoice_id": invoice_id,
                "message": f"Invoice {invoice.billing_no} for {invoice.customer_name} is awaiting approval",
            })
        return result

    def approve(self, invoice_id: str, approver_id: str, *, now: datetime | None = None) -> TransitionResult:
        approver = approver_id.strip()
        if not approver:
            raise BillingValidationError("approver_id is required")
        current = _coerce_utc(now) if now is not None else _now_utc()
        result = self._transition(invoice_id, "approve", ApprovalPatch(approved_by=approver, approved_at=current))
        if result.changed:
            invoice = result.invoice
            self._audit.record("INVOICE_APPROVED", entity_type="Invoice", entity_id=invoice_id, actor_id=approver)
            notify_safely(self._notifications, None, "INVOICE_APPROVED", {
                "invoice_id": invoice_id,
                "message": f"Invoice {invoice.billing_no} for {invoice.customer_name} was approved",
            })
        return result

    def reject(
        self,
        invoice_id: str,
        rejecter_id: str,
        reason: str | None,
        reschedule_date: date | None = None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        normalized_reason = (reason or "").strip()
        if not normalized_reason:
            raise BillingValidationError("rejection reason is required")
        rejecter = rejecter_id.strip()
        if not rejecter:
            raise BillingValidationError("rejecter_id is required")
        current = _coerce_utc(now) if now is not None else _now_utc()
        patch = RejectionPatch(
            rejected_by=rejecter,
            rejected_at=current,
            rejection_reason=normalized_reason,
            reschedule_date=reschedule_date,
        )
        result = self._transition(invoice_id, "reject", patch)
        if result.changed:
            invoice = result.invoice
            self._audit.record("INVOICE_REJECTED", entity_type="Invoice", entity_id=invoice_id, actor_id=rejecter,
                               details={"reason": normalized_reason, "reschedule_date": reschedule_date})
            notify_safely(self._notifications, None, "INVOICE_REJECTED", {
                "invoice_id": invoice_id,
                "message": f"Invoice {invoice.billing_no} was rejected: {normalized_reason}",
                "reason": normalized_reason,
                "reschedule_date": reschedule_date.isoformat() if reschedule_date else "",
            })
        return result

    def resubmit(self, invoice_id: str) -> TransitionResult:
        invoice = self.get(invoice_id)
        if invoice.status == "REJECTED" and invoice.reschedule_date is None:
            raise InvalidTransitionError(invoice_id, "resubmit", invoice.status)
        result = self._transition(invoice_id, "resubmit", ResubmissionPatch(), expected=invoice)
        if result.changed:
            self._audit.record("INVOICE_RESUBMITTED", entity_type="Invoice", entity_id=invoice_id,
                               details={"reschedule_date": invoice.reschedule_date})
            notify_safely(self._notifications, "approver", "INVOICE_PENDING", {
                "invoice_id": invoice_id,
                "message": f"Rescheduled invoice {invoice.billing_no} is awaiting approval again",
            })
        return result

    def mark_sent(self, invoice_id: str, *, now: datetime | None = None) -> DispatchOutcome:
        invoice = self.get(invoice_id)
        if invoice.status == "APPROVED" and not invoice.customer_email:
            raise BillingValidationError(f"invoice {invoice_id} has no customer email")
        current = _coerce_utc(now) if now is not None else _now_utc()
        # Claim the dispatch first so concurrent callers send at most one email.
        result = self._transition(invoice_id, "mark_sent", SentPatch(sent_at=current), expected=invoice)
        if not result.changed:
            return DispatchOutcome(invoice=result.invoice, changed=False)

        sent = result.invoice
        recipient = sent.customer_email or ""
        content = render_invoice_email(sent, now=current, company_name=self._config.company_name)
        receipt = self._delivery.deliver(
            sent,
            recipient=recipient,
            kind="INVOICE",
            subject=content.subject,
            body=content.body,
            correlation_id=sent.invoice_id,
            now=current,
        )
        delivery_error: DeliveryError | None = None
        if receipt.result.status == "FAILED":
            delivery_error = DeliveryError(
                receipt.result.error_message or "email delivery failed",
                error_code=receipt.result.error_code,
            )
        self._audit.record("INVOICE_SENT", entity_type="Invoice", entity_id=invoice_id, details={
            "sent_to": mask_email(recipient),
            "email_status": receipt.email_log.status,
            "message_id": receipt.result.provider_message_id,
        })
        notify_safely(self._notifications, None, "INVOICE_SENT", {
            "invoice_id": invoice_id,
            "message": f"Invoice {sent.billing_no} was sent to {sent.customer_name}",
            "email_status": receipt.email_log.status,
        })
        return DispatchOutcome(invoice=sent, changed=True, email_log=receipt.email_log, delivery_error=delivery_error)

    def mark_paid(
        self,
        invoice_id: str,
        payment_request_id: str | None,
        *,
        now: datetime | None = None,
    ) -> TransitionResult:
        current = _coerce_utc(now) if now is not None else _now_utc()
        result = self._transition(
            invoice_id,
            "mark_paid",
            PaidPatch(paid_at=current, paid_payment_request_id=payment_request_id),
        )
        if result.changed:
            invoice = result.invoice
            self._audit.record("INVOICE_PAID", entity_type="Invoice", entity_id=invoice_id,
                               details={"payment_request_id": payment_request_id, "amount": invoice.amount})
            notify_safely(self._notifications, None, "INVOICE_PAID", {
                "invoice_id": invoice_id,
                "message": f"Invoice {invoice.billing_no} from {invoice.customer_name} has been paid",
            })
        return result

    def request_payment(self, invoice_id: str, *, now: datetime | None = None) -> PaymentRequestOutcome:
        invoice = self.get(invoice_id)
        if invoice.status not in PAYABLE_STATUSES:
            raise InvalidTransitionError(invoice_id, "request_payment", invoice.status)

        for existing in self._store.list_payment_requests(invoice_id):
            if existing.status == "PENDING":
                return PaymentRequestOutcome(payment_request=existing, created=False)

        session = self._gateway.create_checkout(invoice.amount, invoice.currency, invoice.billing_no)
        current = _coerce_utc(now) if now is not None else _now_utc()
        outcome = self._store.insert_payment_request(
            PaymentRequestRecord(
                payment_request_id=new_record_id("pay"),
                invoice_id=invoice_id,
                external_request_id=session.external_request_id,
                checkout_url=session.checkout_url,
                amount=invoice.amount,
                currency=invoice.currency,
                status="PENDING",
                created_at=current,
                updated_at=current,
            )
        )
        if isinstance(outcome, AlreadyExists):
            logger.info(
                "payment request for invoice %s already pending; discarding checkout %s",
                invoice_id,
                session.external_request_id,
            )
            return PaymentRequestOutcome(payment_request=outcome.existing, created=False)
        self._audit.record("PAYMENT_REQUEST_CREATED", entity_type="Invoice", entity_id=invoice_id,
                           details={"external_request_id": session.external_request_id})
        return PaymentRequestOutcome(payment_request=outcome.record, created=True)

    def set_follow_up_enabled(self, invoice_id: str, enabled: bool) -> InvoiceRecord:
        self.get(invoice_id)
        updated = self._store.update_invoice(invoice_id, FollowUpSettingsPatch(follow_up_enabled=enabled))
        if updated is None:
            raise InvoiceNotFoundError(invoice_id)
        self._audit.record("FOLLOW_UP_TOGGLED", entity_type="Invoice", entity_id=invoice_id,
                           details={"follow_up_enabled": enabled})
        return updated

    def _transition(
        self,
        invoice_id: str,
        operation: str,
        patch: InvoiceTransitionPatch,
        *,
        expected: InvoiceRecord | None = None,
    ) -> TransitionResult:
        sources, target = INVOICE_TRANSITIONS[operation]
        invoice = expected if expected is not None else self.get(invoice_id)
        if invoice.status == target:
            return TransitionResult(invoice=invoice, changed=False)
        if invoice.status not in sources:
            raise InvalidTransitionError(invoice_id, operation, invoice.status)

        updated = self._store.transition_invoice(invoice_id, expected_status=invoice.status, patch=patch)
        if updated is not None:
            logger.info("invoice %s %s: %s -> %s", invoice_id, operation, invoice.status, target)
            return TransitionResult(invoice=updated, changed=True)

        # Lost a compare-and-swap race; the winner may already have done this operation.
        current = self.get(invoice_id)
        if current.status == target:
            return TransitionResult(invoice=current, changed=False)
        raise InvalidTransitionError(invoice_id, operation, current.status)
