from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from billing_orchestrator.config import Settings
from billing_orchestrator.email_sender import StubEmailSender
from billing_orchestrator.errors import JobAlreadyRunningError, StoreError
from billing_orchestrator.payment_gateway import StubPaymentGateway
from billing_orchestrator.reconciliation import PaymentCallback
from billing_orchestrator.runtime import BillingRuntime, build_runtime
from billing_orchestrator.state_machine import InvoiceDraft
from billing_orchestrator.store import (
    AlreadyExists,
    ApprovalPatch,
    FollowUpLogRecord,
    Inserted,
    InvoiceRecord,
    JobRunRecord,
    PaymentRequestRecord,
    PaymentStatusPatch,
)
from billing_orchestrator.store_backends import SqlAlchemyBillingStore, create_billing_store

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store(tmp_path: Path) -> SqlAlchemyBillingStore:
    return SqlAlchemyBillingStore(f"sqlite:///{tmp_path / 'billing.db'}")


def _invoice(invoice_id: str = "inv_1", billing_no: str = "BN-5001", status: str = "PENDING_APPROVAL") -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id=invoice_id,
        billing_no=billing_no,
        customer_name="Cedar Works",
        customer_email="accounts@cedar.example.com",
        partner_id=None,
        amount=Decimal("1234.56"),
        currency="PHP",
        due_date=date(2026, 3, 15),
        status=status,  # type: ignore[arg-type]
        created_at=NOW,
        updated_at=NOW,
    )


def _follow_up(follow_up_log_id: str, level: int = 1) -> FollowUpLogRecord:
    return FollowUpLogRecord(
        follow_up_log_id=follow_up_log_id,
        invoice_id="inv_1",
        level=level,
        recipient="accounts@cedar.example.com",
        subject="Friendly reminder",
        template_ref="default-level-1",
        status="NOT_SENT",
        scheduled_at=NOW,
        created_at=NOW,
    )


def _payment(payment_request_id: str, external_request_id: str) -> PaymentRequestRecord:
    return PaymentRequestRecord(
        payment_request_id=payment_request_id,
        invoice_id="inv_1",
        external_request_id=external_request_id,
        checkout_url=f"https://checkout.example.com/{external_request_id}",
        amount=Decimal("1234.56"),
        currency="PHP",
        status="PENDING",
        created_at=NOW,
        updated_at=NOW,
    )


def _job_run(run_id: str, started_at: datetime = NOW) -> JobRunRecord:
    return JobRunRecord(run_id=run_id, job_name="billing-cycle", status="RUNNING", started_at=started_at, created_at=started_at)


def test_invoice_round_trip_keeps_money_and_timezones(tmp_path: Path) -> None:
    store = _store(tmp_path)
    assert isinstance(store.insert_invoice(_invoice()), Inserted)

    loaded = store.get_invoice("inv_1")

    assert loaded is not None
    assert loaded.amount == Decimal("1234.56")
    assert loaded.created_at == NOW
    assert loaded.created_at.tzinfo is not None
    assert loaded.due_date == date(2026, 3, 15)


def test_duplicate_billing_no_returns_existing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_invoice(_invoice())

    outcome = store.insert_invoice(_invoice(invoice_id="inv_2"))

    assert isinstance(outcome, AlreadyExists)
    assert outcome.existing.invoice_id == "inv_1"


def test_transition_is_compare_and_swap(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_invoice(_invoice())
    patch = ApprovalPatch(approved_by="approver-1", approved_at=NOW)

    first = store.transition_invoice("inv_1", expected_status="PENDING_APPROVAL", patch=patch)
    second = store.transition_invoice("inv_1", expected_status="PENDING_APPROVAL", patch=patch)

    assert first is not None
    assert first.status == "APPROVED"
    assert first.approved_by == "approver-1"
    assert second is None


def test_duplicate_follow_up_level_returns_existing(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_invoice(_invoice())

    first = store.insert_follow_up_log(_follow_up("ful_a"))
    second = store.insert_follow_up_log(_follow_up("ful_b"))

    assert isinstance(first, Inserted)
    assert isinstance(second, AlreadyExists)
    assert second.existing.follow_up_log_id == "ful_a"
    assert [log.follow_up_log_id for log in store.list_follow_up_logs("inv_1")] == ["ful_a"]


def test_one_pending_payment_request_per_invoice(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.insert_invoice(_invoice(status="APPROVED"))

    assert isinstance(store.insert_payment_request(_payment("pay_1", "ext-1")), Inserted)
    duplicate = store.insert_payment_request(_payment("pay_2", "ext-2"))
    assert isinstance(duplicate, AlreadyExists)
    assert duplicate.existing.payment_request_id == "pay_1"

    advanced = store.advance_payment_request("pay_1", expected_status="PENDING", patch=PaymentStatusPatch(status="EXPIRED"))
    assert advanced is not None
    assert advanced.status == "EXPIRED"
    assert store.advance_payment_request("pay_1", expected_status="PENDING", patch=PaymentStatusPatch(status="COMPLETED")) is None
    assert isinstance(store.insert_payment_request(_payment("pay_3", "ext-3")), Inserted)


def test_one_running_job_run_per_name(tmp_path: Path) -> None:
    store = _store(tmp_path)

    first = store.start_job_run(_job_run("job_1"))
    second = store.start_job_run(_job_run("job_2"))

    assert isinstance(first, Inserted)
    assert isinstance(second, AlreadyExists)
    assert second.existing.run_id == "job_1"
    assert store.get_running_job_run("billing-cycle").run_id == "job_1"  # type: ignore[union-attr]


def test_sqlite_backed_runtime_runs_the_full_flow(tmp_path: Path) -> None:
    runtime: BillingRuntime = build_runtime(
        Settings(),
        store=create_billing_store(backend="sqlalchemy", database_url=f"sqlite:///{tmp_path / 'flow.db'}"),
        email_sender=StubEmailSender(),
        payment_gateway=StubPaymentGateway(),
    )
    machine = runtime.state_machine
    invoice = machine.create_invoice(
        InvoiceDraft(
            billing_no="BN-5100",
            customer_name="Cedar Works",
            amount=Decimal("75.25"),
            customer_email="accounts@cedar.example.com",
        ),
        now=NOW,
    )
    machine.submit_for_approval(invoice.invoice_id)
    machine.approve(invoice.invoice_id, "approver-1", now=NOW)
    machine.mark_sent(invoice.invoice_id, now=NOW)

    follow_up = runtime.escalation.process(invoice.invoice_id, now=NOW + timedelta(days=3))
    assert follow_up.status == "sent"

    payment = machine.request_payment(invoice.invoice_id).payment_request
    result = runtime.reconciler.reconcile(
        PaymentCallback(external_request_id=payment.external_request_id, status="completed")
    )
    assert result.invoice_status == "PAID"

    summary = runtime.job_runner.run("billing-cycle")
    assert summary.run.status == "COMPLETED"
    assert summary.run.items_processed == 0
    assert runtime.store.get_invoice(invoice.invoice_id).amount == Decimal("75.25")  # type: ignore[union-attr]
    assert len(runtime.store.list_notifications(invoice_id=invoice.invoice_id)) >= 4


def test_concurrent_job_starts_on_sqlite(tmp_path: Path) -> None:
    runtime = build_runtime(
        Settings(),
        store=_store(tmp_path),
        email_sender=StubEmailSender(),
        payment_gateway=StubPaymentGateway(),
    )
    workers = 6
    barrier = threading.Barrier(workers)
    started: list[str] = []
    rejected: list[str] = []
    lock = threading.Lock()

    def _start() -> None:
        barrier.wait()
        try:
            run = runtime.job_runner.start("billing-cycle")
        except JobAlreadyRunningError as exc:
            with lock:
                rejected.append(exc.running_run_id)
            return
        except StoreError:
            # sqlite may report "database is locked" under contention; that is not a second run
            return
        with lock:
            started.append(run.run_id)

    threads = [threading.Thread(target=_start) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(started) == 1
    assert set(rejected) <= set(started)


def test_unsupported_backend_is_rejected() -> None:
    with pytest.raises(RuntimeError):
        create_billing_store(backend="redis", database_url="")
