from __future__ import annotations

import secrets
from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from threading import Lock
from typing import Any, ClassVar, Generic, Protocol, TypeVar, Union

from .models import (
    EmailKind,
    EmailLogStatus,
    FollowUpStatus,
    InvoiceStatus,
    JobRunStatus,
    NotificationType,
    PaymentRequestStatus,
)

RecordT = TypeVar("RecordT")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_record_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


@dataclass(frozen=True)
class InvoiceRecord:
    invoice_id: str
    billing_no: str
    customer_name: str
    customer_email: str | None
    partner_id: str | None
    amount: Decimal
    currency: str
    due_date: date | None
    status: InvoiceStatus
    created_at: datetime
    updated_at: datetime
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    reschedule_date: date | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    paid_payment_request_id: str | None = None
    auto_send_enabled: bool = True
    follow_up_enabled: bool = True
    follow_up_count: int = 0
    last_follow_up_at: datetime | None = None
    last_follow_up_level: int | None = None


@dataclass(frozen=True)
class EmailLogRecord:
    email_log_id: str
    invoice_id: str
    kind: EmailKind
    recipient: str
    subject: str
    status: EmailLogStatus
    created_at: datetime
    provider_message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None


@dataclass(frozen=True)
class FollowUpLogRecord:
    follow_up_log_id: str
    invoice_id: str
    level: int
    recipient: str
    subject: str
    template_ref: str | None
    status: FollowUpStatus
    scheduled_at: datetime
    created_at: datetime
    provider_message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None


@dataclass(frozen=True)
class PaymentRequestRecord:
    payment_request_id: str
    invoice_id: str
    external_request_id: str
    checkout_url: str
    amount: Decimal
    currency: str
    status: PaymentRequestStatus
    created_at: datetime
    updated_at: datetime
    payment_method: str | None = None
    payment_reference: str | None = None
    paid_at: datetime | None = None


@dataclass(frozen=True)
class JobRunRecord:
    run_id: str
    job_name: str
    status: JobRunStatus
    started_at: datetime
    created_at: datetime
    items_processed: int = 0
    items_failed: int = 0
    sent_count: int = 0
    follow_up_count: int = 0
    resubmitted_count: int = 0
    error_detail: str | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class NotificationRecord:
    notification_id: str
    target: str | None
    event_type: NotificationType
    title: str
    message: str
    invoice_id: str | None
    payload: dict[str, str]
    created_at: datetime


@dataclass(frozen=True)
class AuditEntryRecord:
    audit_id: str
    action: str
    entity_type: str
    entity_id: str
    actor_id: str | None
    details: dict[str, str]
    created_at: datetime


# Invoice status transitions. Each patch names the status it moves the invoice to.


@dataclass(frozen=True)
class SubmissionPatch:
    target_status: ClassVar[InvoiceStatus] = "PENDING_APPROVAL"


@dataclass(frozen=True)
class ApprovalPatch:
    target_status: ClassVar[InvoiceStatus] = "APPROVED"
    approved_by: str
    approved_at: datetime


@dataclass(frozen=True)
class RejectionPatch:
    target_status: ClassVar[InvoiceStatus] = "REJECTED"
    rejected_by: str
    rejected_at: datetime
    rejection_reason: str
    reschedule_date: date | None


@dataclass(frozen=True)
class ResubmissionPatch:
    target_status: ClassVar[InvoiceStatus] = "PENDING_APPROVAL"
    reschedule_date: date | None = None


@dataclass(frozen=True)
class SentPatch:
    target_status: ClassVar[InvoiceStatus] = "SENT"
    sent_at: datetime


@dataclass(frozen=True)
class PaidPatch:
    target_status: ClassVar[InvoiceStatus] = "PAID"
    paid_at: datetime
    paid_payment_request_id: str | None


InvoiceTransitionPatch = Union[
    SubmissionPatch,
    ApprovalPatch,
    RejectionPatch,
    ResubmissionPatch,
    SentPatch,
    PaidPatch,
]


# Invoice updates that leave the status alone.


@dataclass(frozen=True)
class FollowUpTrackingPatch:
    follow_up_count: int
    last_follow_up_at: datetime
    last_follow_up_level: int


@dataclass(frozen=True)
class FollowUpSettingsPatch:
    follow_up_enabled: bool


InvoiceUpdatePatch = Union[FollowUpTrackingPatch, FollowUpSettingsPatch]


@dataclass(frozen=True)
class EmailResultPatch:
    status: EmailLogStatus
    provider_message_id: str | None
    error_message: str | None
    sent_at: datetime | None


@dataclass(frozen=True)
class FollowUpResultPatch:
    status: FollowUpStatus
    provider_message_id: str | None
    error_message: str | None
    sent_at: datetime | None


@dataclass(frozen=True)
class PaymentStatusPatch:
    status: PaymentRequestStatus
    payment_method: str | None = None
    payment_reference: str | None = None
    paid_at: datetime | None = None


@dataclass(frozen=True)
class JobProgressPatch:
    items_processed: int
    items_failed: int
    sent_count: int
    follow_up_count: int
    resubmitted_count: int


@dataclass(frozen=True)
class JobFinishPatch:
    status: JobRunStatus
    finished_at: datetime
    items_processed: int
    items_failed: int
    sent_count: int
    follow_up_count: int
    resubmitted_count: int
    error_detail: str | None = None


def patch_values(patch: object) -> dict[str, Any]:
    values = {item.name: getattr(patch, item.name) for item in fields(patch)}  # type: ignore[arg-type]
    target_status = getattr(patch, "target_status", None)
    if target_status is not None:
        values["status"] = target_status
    return values


@dataclass(frozen=True)
class Inserted(Generic[RecordT]):
    record: RecordT


@dataclass(frozen=True)
class AlreadyExists(Generic[RecordT]):
    existing: RecordT


InsertOutcome = Union[Inserted[RecordT], AlreadyExists[RecordT]]


class BillingStore(Protocol):
    def reset(self) -> None: ...

    def insert_invoice(self, record: InvoiceRecord) -> InsertOutcome[InvoiceRecord]: ...

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None: ...

    def list_invoices(self, *, status: InvoiceStatus | None = None) -> list[InvoiceRecord]: ...

    def transition_invoice(
        self,
        invoice_id: str,
        *,
        expected_status: InvoiceStatus,
        patch: InvoiceTransitionPatch,
    ) -> InvoiceRecord | None: ...

    def update_invoice(self, invoice_id: str, patch: InvoiceUpdatePatch) -> InvoiceRecord | None: ...

    def insert_email_log(self, record: EmailLogRecord) -> EmailLogRecord: ...

    def complete_email_log(self, email_log_id: str, patch: EmailResultPatch) -> EmailLogRecord | None: ...

    def list_email_logs(self, invoice_id: str) -> list[EmailLogRecord]: ...

    def insert_follow_up_log(self, record: FollowUpLogRecord) -> InsertOutcome[FollowUpLogRecord]: ...

    def complete_follow_up_log(
        self, follow_up_log_id: str, patch: FollowUpResultPatch
    ) -> FollowUpLogRecord | None: ...

    def list_follow_up_logs(self, invoice_id: str) -> list[FollowUpLogRecord]: ...

    def insert_payment_request(self, record: PaymentRequestRecord) -> InsertOutcome[PaymentRequestRecord]: ...

    def get_payment_request_by_external_id(self, external_request_id: str) -> PaymentRequestRecord | None: ...

    def list_payment_requests(self, invoice_id: str) -> list[PaymentRequestRecord]: ...

    def advance_payment_request(
        self,
        payment_request_id: str,
        *,
        expected_status: PaymentRequestStatus,
        patch: PaymentStatusPatch,
    ) -> PaymentRequestRecord | None: ...

    def start_job_run(self, record: JobRunRecord) -> InsertOutcome[JobRunRecord]: ...

    def record_job_progress(self, run_id: str, patch: JobProgressPatch) -> JobRunRecord | None: ...

    def finish_job_run(self, run_id: str, patch: JobFinishPatch) -> JobRunRecord | None: ...

    def get_job_run(self, run_id: str) -> JobRunRecord | None: ...

    def get_running_job_run(self, job_name: str) -> JobRunRecord | None: ...

    def get_latest_job_run(self, job_name: str) -> JobRunRecord | None: ...

    def insert_notification(self, record: NotificationRecord) -> NotificationRecord: ...

    def list_notifications(self, *, invoice_id: str | None = None) -> list[NotificationRecord]: ...

    def insert_audit_entry(self, record: AuditEntryRecord) -> AuditEntryRecord: ...

    def list_audit_entries(self, *, entity_id: str | None = None) -> list[AuditEntryRecord]: ...


def _replace(record: RecordT, values: dict[str, Any]) -> RecordT:
    return type(record)(**{**record.__dict__, **values})  # type: ignore[call-arg]


class InMemoryBillingStore:
    """Process-local store; every read-check-write happens under one lock."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._invoices: dict[str, InvoiceRecord] = {}
        self._invoice_ids_by_billing_no: dict[str, str] = {}
        self._email_logs: dict[str, EmailLogRecord] = {}
        self._follow_up_logs: dict[str, FollowUpLogRecord] = {}
        self._follow_up_ids_by_level: dict[tuple[str, int], str] = {}
        self._payment_requests: dict[str, PaymentRequestRecord] = {}
        self._payment_ids_by_external_id: dict[str, str] = {}
        self._pending_payment_ids_by_invoice: dict[str, str] = {}
        self._job_runs: dict[str, JobRunRecord] = {}
        self._running_job_ids: dict[str, str] = {}
        self._notifications: list[NotificationRecord] = []
        self._audit_entries: list[AuditEntryRecord] = []

    def reset(self) -> None:
        with self._lock:
            self._invoices.clear()
            self._invoice_ids_by_billing_no.clear()
            self._email_logs.clear()
            self._follow_up_logs.clear()
            self._follow_up_ids_by_level.clear()
            self._payment_requests.clear()
            self._payment_ids_by_external_id.clear()
            self._pending_payment_ids_by_invoice.clear()
            self._job_runs.clear()
            self._running_job_ids.clear()
            self._notifications.clear()
            self._audit_entries.clear()

    # -- invoices -----------------------------------------------------------

    def insert_invoice(self, record: InvoiceRecord) -> InsertOutcome[InvoiceRecord]:
        with self._lock:
            existing_id = self._invoice_ids_by_billing_no.get(record.billing_no)
            if existing_id is not None:
                return AlreadyExists(self._invoices[existing_id])
            self._invoices[record.invoice_id] = record
            self._invoice_ids_by_billing_no[record.billing_no] = record.invoice_id
            return Inserted(record)

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        with self._lock:
            return self._invoices.get(invoice_id)

    def list_invoices(self, *, status: InvoiceStatus | None = None) -> list[InvoiceRecord]:
        with self._lock:
            rows = [row for row in self._invoices.values() if status is None or row.status == status]
        return sorted(rows, key=lambda row: (row.created_at, row.invoice_id))

    def transition_invoice(
        self,
        invoice_id: str,
        *,
        expected_status: InvoiceStatus,
        patch: InvoiceTransitionPatch,
    ) -> InvoiceRecord | None:
        with self._lock:
            row = self._invoices.get(invoice_id)
            if row is None or row.status != expected_status:
                return None
            updated = _replace(row, {**patch_values(patch), "updated_at": _now_utc()})
            self._invoices[invoice_id] = updated
            return updated

    def update_invoice(self, invoice_id: str, patch: InvoiceUpdatePatch) -> InvoiceRecord | None:
        with self._lock:
            row = self._invoices.get(invoice_id)
            if row is None:
                return None
            updated = _replace(row, {**patch_values(patch), "updated_at": _now_utc()})
            self._invoices[invoice_id] = updated
            return updated

    # -- email logs ---------------------------------------------------------

    def insert_email_log(self, record: EmailLogRecord) -> EmailLogRecord:
        with self._lock:
            self._email_logs[record.email_log_id] = record
            return record

    def complete_email_log(self, email_log_id: str, patch: EmailResultPatch) -> EmailLogRecord | None:
        with self._lock:
            row = self._email_logs.get(email_log_id)
            if row is None or row.status != "QUEUED":
                return None
            updated = _replace(row, patch_values(patch))
            self._email_logs[email_log_id] = updated
            return updated

    def list_email_logs(self, invoice_id: str) -> list[EmailLogRecord]:
        with self._lock:
            rows = [row for row in self._email_logs.values() if row.invoice_id == invoice_id]
        return sorted(rows, key=lambda row: (row.created_at, row.email_log_id))

    # -- follow-up logs -----------------------------------------------------

    def insert_follow_up_log(self, record: FollowUpLogRecord) -> InsertOutcome[FollowUpLogRecord]:
        key = (record.invoice_id, record.level)
        with self._lock:
            existing_id = self._follow_up_ids_by_level.get(key)
            if existing_id is not None:
                return AlreadyExists(self._follow_up_logs[existing_id])
            self._follow_up_logs[record.follow_up_log_id] = record
            self._follow_up_ids_by_level[key] = record.follow_up_log_id
            return Inserted(record)

    def complete_follow_up_log(
        self, follow_up_log_id: str, patch: FollowUpResultPatch
    ) -> FollowUpLogRecord | None:
        with self._lock:
            row = self._follow_up_logs.get(follow_up_log_id)
            if row is None or row.status != "NOT_SENT":
                return None
            updated = _replace(row, patch_values(patch))
            self._follow_up_logs[follow_up_log_id] = updated
            return updated

    def list_follow_up_logs(self, invoice_id: str) -> list[FollowUpLogRecord]:
        with self._lock:
            rows = [row for row in self._follow_up_logs.values() if row.invoice_id == invoice_id]
        return sorted(rows, key=lambda row: row.level)

    # -- payment requests ---------------------------------------------------

    def insert_payment_request(self, record: PaymentRequestRecord) -> InsertOutcome[PaymentRequestRecord]:
        with self._lock:
            existing_id = self._payment_ids_by_external_id.get(record.external_request_id)
            if existing_id is None and record.status == "PENDING":
                existing_id = self._pending_payment_ids_by_invoice.get(record.invoice_id)
            if existing_id is not None:
                return AlreadyExists(self._payment_requests[existing_id])
            self._payment_requests[record.payment_request_id] = record
            self._payment_ids_by_external_id[record.external_request_id] = record.payment_request_id
            if record.status == "PENDING":
                self._pending_payment_ids_by_invoice[record.invoice_id] = record.payment_request_id
            return Inserted(record)

    def get_payment_request_by_external_id(self, external_request_id: str) -> PaymentRequestRecord | None:
        with self._lock:
            payment_request_id = self._payment_ids_by_external_id.get(external_request_id)
            if payment_request_id is None:
                return None
            return self._payment_requests[payment_request_id]

    def list_payment_requests(self, invoice_id: str) -> list[PaymentRequestRecord]:
        with self._lock:
            rows = [row for row in self._payment_requests.values() if row.invoice_id == invoice_id]
        return sorted(rows, key=lambda row: (row.created_at, row.payment_request_id))

    def advance_payment_request(
        self,
        payment_request_id: str,
        *,
        expected_status: PaymentRequestStatus,
        patch: PaymentStatusPatch,
    ) -> PaymentRequestRecord | None:
        with self._lock:
            row = self._payment_requests.get(payment_request_id)
            if row is None or row.status != expected_status:
                return None
            updated = _replace(row, {**patch_values(patch), "updated_at": _now_utc()})
            self._payment_requests[payment_request_id] = updated
            if updated.status != "PENDING" and self._pending_payment_ids_by_invoice.get(row.invoice_id) == payment_request_id:
                del self._pending_payment_ids_by_invoice[row.invoice_id]
            return updated

    # -- job runs -----------------------------------------------------------

    def start_job_run(self, record: JobRunRecord) -> InsertOutcome[JobRunRecord]:
        with self._lock:
            running_id = self._running_job_ids.get(record.job_name)
            if running_id is not None:
                return AlreadyExists(self._job_runs[running_id])
            self._job_runs[record.run_id] = record
            self._running_job_ids[record.job_name] = record.run_id
            return Inserted(record)

    def record_job_progress(self, run_id: str, patch: JobProgressPatch) -> JobRunRecord | None:
        with self._lock:
            row = self._job_runs.get(run_id)
            if row is None or row.status != "RUNNING" or patch.items_processed < row.items_processed:
                return None
            updated = _replace(row, patch_values(patch))
            self._job_runs[run_id] = updated
            return updated

    def finish_job_run(self, run_id: str, patch: JobFinishPatch) -> JobRunRecord | None:
        with self._lock:
            row = self._job_runs.get(run_id)
            if row is None or row.status != "RUNNING":
                return None
            updated = _replace(row, patch_values(patch))
            self._job_runs[run_id] = updated
            if self._running_job_ids.get(row.job_name) == run_id:
                del self._running_job_ids[row.job_name]
            return updated

    def get_job_run(self, run_id: str) -> JobRunRecord | None:
        with self._lock:
            return self._job_runs.get(run_id)

    def get_running_job_run(self, job_name: str) -> JobRunRecord | None:
        with self._lock:
            run_id = self._running_job_ids.get(job_name)
            return self._job_runs.get(run_id) if run_id is not None else None

    def get_latest_job_run(self, job_name: str) -> JobRunRecord | None:
        with self._lock:
            rows = [row for row in self._job_runs.values() if row.job_name == job_name]
        if not rows:
            return None
        return max(rows, key=lambda row: (row.started_at, row.created_at))

    # -- notifications and audit --------------------------------------------

    def insert_notification(self, record: NotificationRecord) -> NotificationRecord:
        with self._lock:
            self._notifications.append(record)
            return record

    def list_notifications(self, *, invoice_id: str | None = None) -> list[NotificationRecord]:
        with self._lock:
            return [row for row in self._notifications if invoice_id is None or row.invoice_id == invoice_id]

    def insert_audit_entry(self, record: AuditEntryRecord) -> AuditEntryRecord:
        with self._lock:
            self._audit_entries.append(record)
            return record

    def list_audit_entries(self, *, entity_id: str | None = None) -> list[AuditEntryRecord]:
        with self._lock:
            return [row for row in self._audit_entries if entity_id is None or row.entity_id == entity_id]
