from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from billing_orchestrator.config import Settings
from billing_orchestrator.email_sender import StubEmailSender
from billing_orchestrator.errors import BillingValidationError, StoreError, UnknownPaymentRequestError
from billing_orchestrator.payment_gateway import StubPaymentGateway
from billing_orchestrator.reconciliation import PaymentCallback, is_forward_move, normalize_gateway_status
from billing_orchestrator.runtime import BillingRuntime, build_runtime
from billing_orchestrator.state_machine import InvoiceDraft
from billing_orchestrator.store import InMemoryBillingStore, InvoiceRecord, PaidPatch

NOW = datetime(2026, 3, 5, 10, 30, tzinfo=timezone.utc)


class _PaidTransitionFailsOnce(InMemoryBillingStore):
    """Raises StoreError the first time an invoice is moved to PAID."""

    def __init__(self) -> None:
        super().__init__()
        self.failures_left = 1

    def transition_invoice(self, invoice_id: str, *, expected_status: Any, patch: Any) -> InvoiceRecord | None:
        if isinstance(patch, PaidPatch) and self.failures_left > 0:
            self.failures_left -= 1
            raise StoreError("transition invoice failed: OperationalError")
        return super().transition_invoice(invoice_id, expected_status=expected_status, patch=patch)


def _runtime(store: InMemoryBillingStore | None = None) -> BillingRuntime:
    return build_runtime(
        Settings(),
        store=store or InMemoryBillingStore(),
        email_sender=StubEmailSender(),
        payment_gateway=StubPaymentGateway(),
    )


def _pending_payment(runtime: BillingRuntime, *, send: bool = True) -> tuple[str, str]:
    machine = runtime.state_machine
    invoice = machine.create_invoice(
        InvoiceDraft(
            billing_no="BN-4001",
            customer_name="Summit Logistics",
            amount=Decimal("2450.00"),
            customer_email="ap@summit.example.com",
            due_date=date(2026, 3, 10),
        )
    )
    machine.submit_for_approval(invoice.invoice_id)
    machine.approve(invoice.invoice_id, "approver-1")
    if send:
        machine.mark_sent(invoice.invoice_id)
    payment = machine.request_payment(invoice.invoice_id).payment_request
    return invoice.invoice_id, payment.external_request_id


def test_normalize_gateway_status_aliases() -> None:
    assert normalize_gateway_status("completed") == "COMPLETED"
    assert normalize_gateway_status(" Succeeded ") == "COMPLETED"
    assert normalize_gateway_status("EXPIRED") == "EXPIRED"
    with pytest.raises(BillingValidationError):
        normalize_gateway_status("refunded")


def test_forward_moves_only_leave_pending() -> None:
    assert is_forward_move("PENDING", "COMPLETED") is True
    assert is_forward_move("PENDING", "PENDING") is False
    assert is_forward_move("COMPLETED", "PENDING") is False
    assert is_forward_move("FAILED", "COMPLETED") is False


def test_completed_callback_marks_invoice_paid() -> None:
    runtime = _runtime()
    invoice_id, external_id = _pending_payment(runtime)

    result = runtime.reconciler.reconcile(
        PaymentCallback(
            external_request_id=external_id,
            status="completed",
            timestamp=NOW,
            payment_method="card",
            payment_reference="ref-778",
        )
    )

    assert result.outcome == "applied"
    assert result.payment_request.status == "COMPLETED"
    assert result.payment_request.paid_at == NOW
    assert result.payment_request.payment_method == "card"
    assert result.invoice_status == "PAID"
    invoice = runtime.store.get_invoice(invoice_id)
    assert invoice is not None
    assert invoice.paid_payment_request_id == result.payment_request.payment_request_id
    assert any(item.event_type == "INVOICE_PAID" for item in runtime.store.list_notifications(invoice_id=invoice_id))


def test_completed_callback_for_approved_invoice_marks_paid() -> None:
    runtime = _runtime()
    invoice_id, external_id = _pending_payment(runtime, send=False)

    result = runtime.reconciler.reconcile(PaymentCallback(external_request_id=external_id, status="completed"))

    assert result.invoice_status == "PAID"
    assert runtime.store.get_invoice(invoice_id).status == "PAID"  # type: ignore[union-attr]


def test_stale_pending_after_completed_is_ignored() -> None:
    runtime = _runtime()
    _, external_id = _pending_payment(runtime)
    runtime.reconciler.reconcile(PaymentCallback(external_request_id=external_id, status="completed"))

    stale = runtime.reconciler.reconcile(PaymentCallback(external_request_id=external_id, status="pending"))

    assert stale.outcome == "ignored"
    assert stale.payment_request.status == "COMPLETED"
    assert runtime.store.get_payment_request_by_external_id(external_id).status == "COMPLETED"  # type: ignore[union-attr]


def test_duplicate_completed_callback_is_ignored() -> None:
    runtime = _runtime()
    invoice_id, external_id = _pending_payment(runtime)
    callback = PaymentCallback(external_request_id=external_id, status="completed")

    runtime.reconciler.reconcile(callback)
    second = runtime.reconciler.reconcile(callback)

    assert second.outcome == "ignored"
    paid_audit = [entry for entry in runtime.store.list_audit_entries(entity_id=invoice_id) if entry.action == "INVOICE_PAID"]
    assert len(paid_audit) == 1


def test_failed_callback_notifies_and_leaves_invoice_open() -> None:
    runtime = _runtime()
    invoice_id, external_id = _pending_payment(runtime)

    result = runtime.reconciler.reconcile(PaymentCallback(external_request_id=external_id, status="failed"))

    assert result.outcome == "applied"
    assert result.payment_request.status == "FAILED"
    assert result.invoice_status == "SENT"
    failed = [item for item in runtime.store.list_notifications(invoice_id=invoice_id) if item.event_type == "PAYMENT_FAILED"]
    assert len(failed) == 1
    assert failed[0].payload["payment_status"] == "FAILED"

    retry = runtime.state_machine.request_payment(invoice_id)
    assert retry.created is True


def test_unknown_external_id_raises_without_mutation() -> None:
    runtime = _runtime()
    invoice_id, external_id = _pending_payment(runtime)
    audit_before = len(runtime.store.list_audit_entries())

    with pytest.raises(UnknownPaymentRequestError) as exc_info:
        runtime.reconciler.reconcile(PaymentCallback(external_request_id="stubpay-unknown", status="completed"))

    assert exc_info.value.external_request_id == "stubpay-unknown"
    assert runtime.store.get_payment_request_by_external_id(external_id).status == "PENDING"  # type: ignore[union-attr]
    assert runtime.store.get_invoice(invoice_id).status == "SENT"  # type: ignore[union-attr]
    assert len(runtime.store.list_audit_entries()) == audit_before


def test_completed_payment_for_already_paid_invoice_keeps_it_paid() -> None:
    runtime = _runtime()
    invoice_id, external_id = _pending_payment(runtime)
    runtime.state_machine.mark_paid(invoice_id, None)

    result = runtime.reconciler.reconcile(PaymentCallback(external_request_id=external_id, status="completed"))

    assert result.outcome == "applied"
    assert result.invoice_status == "PAID"
    notices = [item for item in runtime.store.list_notifications(invoice_id=invoice_id) if item.event_type == "SYSTEM"]
    assert notices == []


def test_retried_completed_callback_settles_invoice_after_store_failure() -> None:
    store = _PaidTransitionFailsOnce()
    runtime = _runtime(store)
    invoice_id, external_id = _pending_payment(runtime)
    callback = PaymentCallback(external_request_id=external_id, status="completed", timestamp=NOW)

    with pytest.raises(StoreError):
        runtime.reconciler.reconcile(callback)
    assert store.get_payment_request_by_external_id(external_id).status == "COMPLETED"  # type: ignore[union-attr]
    assert store.get_invoice(invoice_id).status == "SENT"  # type: ignore[union-attr]

    retried = runtime.reconciler.reconcile(callback)

    assert retried.outcome == "applied"
    assert retried.invoice_status == "PAID"
    invoice = store.get_invoice(invoice_id)
    assert invoice is not None
    assert invoice.status == "PAID"
    assert invoice.paid_at == NOW
    assert invoice.paid_payment_request_id == retried.payment_request.payment_request_id

    third = runtime.reconciler.reconcile(callback)
    assert third.outcome == "ignored"
