from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator

InvoiceStatus = Literal["DRAFT", "PENDING_APPROVAL", "APPROVED", "REJECTED", "SENT", "PAID"]
EmailLogStatus = Literal["QUEUED", "SENT", "FAILED"]
EmailKind = Literal["INVOICE", "FOLLOW_UP"]
FollowUpStatus = Literal["NOT_SENT", "SENT", "FAILED"]
PaymentRequestStatus = Literal["PENDING", "COMPLETED", "FAILED", "EXPIRED"]
JobRunStatus = Literal["RUNNING", "COMPLETED", "FAILED"]
EscalationOutcome = Literal["due", "not_yet_due", "exhausted"]
FollowUpProcessStatus = Literal["sent", "failed", "duplicate", "not_yet_due", "exhausted", "skipped"]
ReconciliationOutcome = Literal["applied", "ignored", "unknown_request"]
NotificationType = Literal[
    "INVOICE_PENDING",
    "INVOICE_APPROVED",
    "INVOICE_REJECTED",
    "INVOICE_SENT",
    "INVOICE_PAID",
    "INVOICE_FOLLOW_UP",
    "PAYMENT_FAILED",
    "SYSTEM",
]

CENTS = Decimal("0.01")


def to_money(value: float | int | str | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class InvoiceCreateRequest(BaseModel):
    billing_no: str = Field(min_length=1, max_length=64)
    customer_name: str = Field(min_length=1, max_length=256)
    customer_email: str | None = Field(default=None, max_length=320)
    partner_id: str | None = Field(default=None, max_length=128)
    amount: float = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    due_date: date | None = None
    auto_send_enabled: bool = True
    follow_up_enabled: bool = True

    @field_validator("billing_no", "customer_name")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("invoice fields cannot be blank")
        return normalized

    @field_validator("customer_email")
    @classmethod
    def _normalize_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        if "@" not in normalized:
            raise ValueError("customer_email must be an email address")
        return normalized

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().upper()
        if len(normalized) != 3 or not normalized.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return normalized


class ApproveRequest(BaseModel):
    approver_id: str = Field(min_length=1, max_length=128)


class RejectRequest(BaseModel):
    rejecter_id: str = Field(min_length=1, max_length=128)
    reason: str | None = Field(default=None, max_length=2000)
    reschedule_date: date | None = None


class FollowUpSettingsRequest(BaseModel):
    enabled: bool


class PaymentCallbackRequest(BaseModel):
    external_request_id: str = Field(min_length=1, max_length=128)
    status: str = Field(min_length=1, max_length=32)
    timestamp: datetime | None = None
    payment_method: str | None = Field(default=None, max_length=64)
    payment_reference: str | None = Field(default=None, max_length=128)


class InvoiceItem(BaseModel):
    invoice_id: str
    billing_no: str
    customer_name: str
    customer_email: str | None = None
    partner_id: str | None = None
    amount: float
    currency: str
    due_date: date | None = None
    status: InvoiceStatus
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejected_by: str | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    reschedule_date: date | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    paid_payment_request_id: str | None = None
    auto_send_enabled: bool
    follow_up_enabled: bool
    follow_up_count: int
    last_follow_up_at: datetime | None = None
    last_follow_up_level: int | None = None
    created_at: datetime
    updated_at: datetime


class InvoiceListResponse(BaseModel):
    items: list[InvoiceItem]


class EmailLogItem(BaseModel):
    email_log_id: str
    invoice_id: str
    kind: EmailKind
    recipient: str
    subject: str
    status: EmailLogStatus
    provider_message_id: str | None = None
    error_message: str | None = None
    created_at: datetime
    sent_at: datetime | None = None


class EmailLogListResponse(BaseModel):
    invoice_id: str
    items: list[EmailLogItem]


class DispatchResponse(BaseModel):
    invoice: InvoiceItem
    email_log: EmailLogItem | None = None
    warning: str | None = None


class FollowUpLogItem(BaseModel):
    follow_up_log_id: str
    invoice_id: str
    level: int
    recipient: str
    subject: str
    template_ref: str | None = None
    status: FollowUpStatus
    provider_message_id: str | None = None
    error_message: str | None = None
    scheduled_at: datetime
    sent_at: datetime | None = None
    created_at: datetime


class FollowUpLogListResponse(BaseModel):
    invoice_id: str
    items: list[FollowUpLogItem]


class FollowUpSendResponse(BaseModel):
    invoice_id: str
    status: FollowUpProcessStatus
    level: int | None = None
    reason: str | None = None
    follow_up_log: FollowUpLogItem | None = None
    warning: str | None = None


class PaymentRequestItem(BaseModel):
    payment_request_id: str
    invoice_id: str
    external_request_id: str
    checkout_url: str
    amount: float
    currency: str
    status: PaymentRequestStatus
    payment_method: str | None = None
    payment_reference: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class PaymentRequestListResponse(BaseModel):
    invoice_id: str
    items: list[PaymentRequestItem]


class PaymentRequestCreateResponse(BaseModel):
    created: bool
    payment_request: PaymentRequestItem


class PaymentCallbackResponse(BaseModel):
    received: bool = True
    outcome: ReconciliationOutcome
    retryable: bool = False
    payment_request_id: str | None = None
    payment_status: PaymentRequestStatus | None = None
    invoice_status: InvoiceStatus | None = None


class JobRunItem(BaseModel):
    run_id: str
    job_name: str
    status: JobRunStatus
    started_at: datetime
    items_processed: int
    items_failed: int
    sent_count: int
    follow_up_count: int
    resubmitted_count: int
    error_detail: str | None = None
    created_at: datetime
    finished_at: datetime | None = None


class JobItemResultItem(BaseModel):
    invoice_id: str
    action: str
    outcome: str
    error: str | None = None


class JobTriggerResponse(BaseModel):
    run: JobRunItem
    items: list[JobItemResultItem]


class JobStatusResponse(BaseModel):
    job_name: str
    running: bool
    last_run: JobRunItem | None = None
    next_run_at: datetime | None = None


class JobAlreadyRunningResponse(BaseModel):
    detail: str
    job_name: str
    running_run_id: str


class NotificationItem(BaseModel):
    notification_id: str
    target: str | None = None
    event_type: NotificationType
    title: str
    message: str
    invoice_id: str | None = None
    payload: dict[str, str]
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationItem]


class AuditEntryItem(BaseModel):
    audit_id: str
    action: str
    entity_type: str
    entity_id: str
    actor_id: str | None = None
    details: dict[str, str]
    created_at: datetime


class AuditEntryListResponse(BaseModel):
    items: list[AuditEntryItem]
