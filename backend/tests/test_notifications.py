from __future__ import annotations

from decimal import Decimal
from typing import Mapping

import pytest

from billing_orchestrator.config import Settings
from billing_orchestrator.email_sender import StubEmailSender
from billing_orchestrator.errors import StoreError
from billing_orchestrator.models import NotificationType
from billing_orchestrator.notifications import AuditTrail, StoreNotificationSink, notify_safely
from billing_orchestrator.payment_gateway import StubPaymentGateway
from billing_orchestrator.runtime import build_runtime
from billing_orchestrator.state_machine import InvoiceDraft
from billing_orchestrator.store import AuditEntryRecord, InMemoryBillingStore


class _BrokenSink:
    def __init__(self) -> None:
        self.calls = 0

    def notify(self, target: str | None, event_type: NotificationType, payload: Mapping[str, str]) -> None:
        self.calls += 1
        raise ConnectionError("notification hub unreachable")


class _AuditFailingStore(InMemoryBillingStore):
    def insert_audit_entry(self, record: AuditEntryRecord) -> AuditEntryRecord:
        raise StoreError("insert audit entry failed: OperationalError")


def test_store_sink_uses_title_and_broadcast_target() -> None:
    store = InMemoryBillingStore()
    sink = StoreNotificationSink(store)

    sink.notify(None, "INVOICE_SENT", {"invoice_id": "inv_9", "message": "Bill BN-9 sent", "billing_no": "BN-9"})

    [record] = store.list_notifications(invoice_id="inv_9")
    assert record.target is None
    assert record.title == "Invoice Sent"
    assert record.message == "Bill BN-9 sent"
    assert record.payload == {"invoice_id": "inv_9", "billing_no": "BN-9"}


def test_notify_safely_swallows_sink_failures(caplog: pytest.LogCaptureFixture) -> None:
    sink = _BrokenSink()

    with caplog.at_level("WARNING", logger="billing_orchestrator.notifications"):
        notify_safely(sink, "approver", "INVOICE_PENDING", {"invoice_id": "inv_1"})

    assert sink.calls == 1
    assert any("INVOICE_PENDING dropped" in record.getMessage() for record in caplog.records)


def test_transitions_survive_broken_notifications_and_audit() -> None:
    sink = _BrokenSink()
    runtime = build_runtime(
        Settings(),
        store=_AuditFailingStore(),
        email_sender=StubEmailSender(),
        payment_gateway=StubPaymentGateway(),
        notifications=sink,
    )
    machine = runtime.state_machine
    invoice = machine.create_invoice(
        InvoiceDraft(billing_no="BN-8001", customer_name="Northside Bakery", amount=Decimal("88.00"))
    )

    machine.submit_for_approval(invoice.invoice_id)
    approved = machine.approve(invoice.invoice_id, "approver-1")

    assert approved.invoice.status == "APPROVED"
    assert sink.calls >= 2


def test_audit_trail_drops_none_details() -> None:
    store = InMemoryBillingStore()
    AuditTrail(store).record(
        "INVOICE_REJECTED",
        entity_type="Invoice",
        entity_id="inv_4",
        actor_id="approver-1",
        details={"reason": "Wrong amount", "reschedule_date": None},
    )

    [entry] = store.list_audit_entries(entity_id="inv_4")
    assert entry.details == {"reason": "Wrong amount"}
    assert entry.actor_id == "approver-1"
