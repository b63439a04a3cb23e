from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import Settings, get_settings
from .errors import (
    BillingValidationError,
    GatewayError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    JobAlreadyRunningError,
    StoreError,
    UnknownJobError,
    UnknownPaymentRequestError,
)
from .jobs import JobRunSummary
from .models import (
    ApproveRequest,
    AuditEntryItem,
    AuditEntryListResponse,
    DispatchResponse,
    EmailLogItem,
    EmailLogListResponse,
    FollowUpLogItem,
    FollowUpLogListResponse,
    FollowUpSendResponse,
    FollowUpSettingsRequest,
    InvoiceCreateRequest,
    InvoiceItem,
    InvoiceListResponse,
    InvoiceStatus,
    JobAlreadyRunningResponse,
    JobItemResultItem,
    JobRunItem,
    JobStatusResponse,
    JobTriggerResponse,
    NotificationItem,
    NotificationListResponse,
    PaymentCallbackRequest,
    PaymentCallbackResponse,
    PaymentRequestCreateResponse,
    PaymentRequestItem,
    PaymentRequestListResponse,
    RejectRequest,
)
from .reconciliation import PaymentCallback
from .runtime import BillingRuntime, build_runtime
from .state_machine import InvoiceDraft
from .store import (
    AuditEntryRecord,
    EmailLogRecord,
    FollowUpLogRecord,
    InvoiceRecord,
    JobRunRecord,
    NotificationRecord,
    PaymentRequestRecord,
)
from .webhook_security import verify_payment_callback_signature

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/billing", tags=["billing"])
runtime: BillingRuntime = build_runtime(_settings)


def reset_runtime_state_for_tests(settings: Settings | None = None, **overrides: Any) -> BillingRuntime:
    """Rebuild the module runtime on a clean store; ``overrides`` go to ``build_runtime``."""
    global _settings, runtime
    runtime.stop_scheduler()
    if settings is not None:
        _settings = settings
    runtime = build_runtime(_settings, **overrides)
    runtime.store.reset()
    return runtime


def start_scheduler() -> None:
    runtime.start_scheduler()


def stop_scheduler() -> None:
    runtime.stop_scheduler()


def _record_fields(record: Any) -> dict[str, Any]:
    values = dict(record.__dict__)
    for key, value in values.items():
        if isinstance(value, Decimal):
            values[key] = float(value)
    return values


def _invoice_item(record: InvoiceRecord) -> InvoiceItem:
    return InvoiceItem(**_record_fields(record))


def _email_log_item(record: EmailLogRecord) -> EmailLogItem:
    return EmailLogItem(**_record_fields(record))


def _follow_up_log_item(record: FollowUpLogRecord) -> FollowUpLogItem:
    return FollowUpLogItem(**_record_fields(record))


def _payment_request_item(record: PaymentRequestRecord) -> PaymentRequestItem:
    return PaymentRequestItem(**_record_fields(record))


def _job_run_item(record: JobRunRecord) -> JobRunItem:
    return JobRunItem(**_record_fields(record))


def _notification_item(record: NotificationRecord) -> NotificationItem:
    return NotificationItem(**_record_fields(record))


def _audit_entry_item(record: AuditEntryRecord) -> AuditEntryItem:
    return AuditEntryItem(**_record_fields(record))


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvoiceNotFoundError):
        return HTTPException(status_code=404, detail=f"invoice not found: {exc.args[0]}")
    if isinstance(exc, UnknownJobError):
        return HTTPException(status_code=404, detail=f"job not found: {exc.args[0]}")
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, BillingValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail=f"payment gateway error: {exc.error_code or exc.message}")
    if isinstance(exc, StoreError):
        logger.error("billing store unavailable: %s", exc)
        return HTTPException(status_code=503, detail="billing store unavailable")
    return HTTPException(status_code=500, detail="unexpected billing error")


_MAPPED_ERRORS = (
    InvoiceNotFoundError,
    UnknownJobError,
    InvalidTransitionError,
    BillingValidationError,
    GatewayError,
    StoreError,
)


@router.post("/invoices", response_model=InvoiceItem, status_code=status.HTTP_201_CREATED)
def create_invoice(payload: InvoiceCreateRequest) -> InvoiceItem:
    draft = InvoiceDraft(
        billing_no=payload.billing_no,
        customer_name=payload.customer_name,
        amount=Decimal(str(payload.amount)),
        customer_email=payload.customer_email,
        partner_id=payload.partner_id,
        currency=payload.currency,
        due_date=payload.due_date,
        auto_send_enabled=payload.auto_send_enabled,
        follow_up_enabled=payload.follow_up_enabled,
    )
    try:
        return _invoice_item(runtime.state_machine.create_invoice(draft))
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc


@router.get("/invoices", response_model=InvoiceListResponse)
def list_invoices(status_filter: InvoiceStatus | None = Query(default=None, alias="status")) -> InvoiceListResponse:
    try:
        records = runtime.store.list_invoices(status=status_filter)
    except StoreError as exc:
        raise _http_error(exc) from exc
    return InvoiceListResponse(items=[_invoice_item(record) for record in records])


@router.get("/invoices/{invoice_id}", response_model=InvoiceItem)
def get_invoice(invoice_id: str) -> InvoiceItem:
    try:
        return _invoice_item(runtime.state_machine.get(invoice_id))
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/invoices/{invoice_id}/submit", response_model=InvoiceItem)
def submit_invoice(invoice_id: str) -> InvoiceItem:
    try:
        return _invoice_item(runtime.state_machine.submit_for_approval(invoice_id).invoice)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/invoices/{invoice_id}/approve", response_model=InvoiceItem)
def approve_invoice(invoice_id: str, payload: ApproveRequest) -> InvoiceItem:
    try:
        return _invoice_item(runtime.state_machine.approve(invoice_id, payload.approver_id).invoice)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/invoices/{invoice_id}/reject", response_model=InvoiceItem)
def reject_invoice(invoice_id: str, payload: RejectRequest) -> InvoiceItem:
    try:
        result = runtime.state_machine.reject(
            invoice_id,
            payload.rejecter_id,
            payload.reason,
            payload.reschedule_date,
        )
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    return _invoice_item(result.invoice)


@router.post("/invoices/{invoice_id}/resubmit", response_model=InvoiceItem)
def resubmit_invoice(invoice_id: str) -> InvoiceItem:
    try:
        return _invoice_item(runtime.state_machine.resubmit(invoice_id).invoice)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc


@router.post("/invoices/{invoice_id}/send", response_model=DispatchResponse)
def send_invoice(invoice_id: str) -> DispatchResponse:
    try:
        outcome = runtime.state_machine.mark_sent(invoice_id)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    warning = None
    if outcome.delivery_error is not None:
        warning = f"invoice marked sent but email delivery failed: {outcome.delivery_error.message}"
    return DispatchResponse(
        invoice=_invoice_item(outcome.invoice),
        email_log=_email_log_item(outcome.email_log) if outcome.email_log is not None else None,
        warning=warning,
    )


@router.post("/invoices/{invoice_id}/follow-ups", response_model=FollowUpSendResponse)
def send_follow_up(invoice_id: str, force: bool = True) -> FollowUpSendResponse:
    try:
        outcome = runtime.escalation.process(invoice_id, force=force)
    except StoreError as exc:
        raise _http_error(exc) from exc
    if outcome.reason == "invoice_not_found":
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}")
    warning = None
    if outcome.delivery_error is not None:
        warning = f"follow-up delivery failed: {outcome.delivery_error.message}"
    return FollowUpSendResponse(
        invoice_id=outcome.invoice_id,
        status=outcome.status,
        level=outcome.level,
        reason=outcome.reason,
        follow_up_log=_follow_up_log_item(outcome.follow_up_log) if outcome.follow_up_log is not None else None,
        warning=warning,
    )


@router.put("/invoices/{invoice_id}/follow-up-settings", response_model=InvoiceItem)
def update_follow_up_settings(invoice_id: str, payload: FollowUpSettingsRequest) -> InvoiceItem:
    try:
        return _invoice_item(runtime.state_machine.set_follow_up_enabled(invoice_id, payload.enabled))
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc


@router.get("/invoices/{invoice_id}/email-logs", response_model=EmailLogListResponse)
def list_email_logs(invoice_id: str) -> EmailLogListResponse:
    try:
        runtime.state_machine.get(invoice_id)
        records = runtime.store.list_email_logs(invoice_id)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    return EmailLogListResponse(invoice_id=invoice_id, items=[_email_log_item(record) for record in records])


@router.get("/invoices/{invoice_id}/follow-up-logs", response_model=FollowUpLogListResponse)
def list_follow_up_logs(invoice_id: str) -> FollowUpLogListResponse:
    try:
        runtime.state_machine.get(invoice_id)
        records = runtime.store.list_follow_up_logs(invoice_id)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    return FollowUpLogListResponse(invoice_id=invoice_id, items=[_follow_up_log_item(record) for record in records])


@router.post(
    "/invoices/{invoice_id}/payment-requests",
    response_model=PaymentRequestCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_payment_request(invoice_id: str) -> PaymentRequestCreateResponse:
    try:
        outcome = runtime.state_machine.request_payment(invoice_id)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    return PaymentRequestCreateResponse(
        created=outcome.created,
        payment_request=_payment_request_item(outcome.payment_request),
    )


@router.get("/invoices/{invoice_id}/payment-requests", response_model=PaymentRequestListResponse)
def list_payment_requests(invoice_id: str) -> PaymentRequestListResponse:
    try:
        runtime.state_machine.get(invoice_id)
        records = runtime.store.list_payment_requests(invoice_id)
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    return PaymentRequestListResponse(
        invoice_id=invoice_id,
        items=[_payment_request_item(record) for record in records],
    )


@router.get("/payments/callback")
def payment_callback_health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/payments/callback", response_model=PaymentCallbackResponse)
async def receive_payment_callback(request: Request) -> Any:
    body = await request.body()
    verification = verify_payment_callback_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        if _settings.payment_webhook_signature_mode == "enforce":
            logger.warning("payment callback rejected: %s", verification.reason)
            raise HTTPException(status_code=401, detail=f"invalid callback signature: {verification.reason}")
        logger.warning("payment callback signature not verified (%s); accepting in log_only mode", verification.reason)

    try:
        payload = PaymentCallbackRequest.model_validate_json(body or b"{}")
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False)) from exc

    callback = PaymentCallback(
        external_request_id=payload.external_request_id,
        status=payload.status,
        timestamp=payload.timestamp,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
    )
    try:
        result = await run_in_threadpool(runtime.reconciler.reconcile, callback)
    except UnknownPaymentRequestError:
        response = PaymentCallbackResponse(outcome="unknown_request", retryable=True)
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=response.model_dump(mode="json"))
    except _MAPPED_ERRORS as exc:
        raise _http_error(exc) from exc
    return PaymentCallbackResponse(
        outcome=result.outcome,
        payment_request_id=result.payment_request.payment_request_id,
        payment_status=result.payment_request.status,
        invoice_status=result.invoice_status,
    )


def _trigger_response(summary: JobRunSummary) -> JobTriggerResponse:
    return JobTriggerResponse(
        run=_job_run_item(summary.run),
        items=[
            JobItemResultItem(invoice_id=item.invoice_id, action=item.action, outcome=item.outcome, error=item.error)
            for item in summary.items
        ],
    )


@router.post("/jobs/{job_name}/trigger", response_model=JobTriggerResponse)
def trigger_job(job_name: str) -> Any:
    try:
        summary = runtime.job_runner.run(job_name)
    except JobAlreadyRunningError as exc:
        response = JobAlreadyRunningResponse(
            detail=f"job {job_name} is already running",
            job_name=job_name,
            running_run_id=exc.running_run_id,
        )
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=response.model_dump(mode="json"))
    except UnknownJobError as exc:
        raise _http_error(exc) from exc
    except StoreError as exc:
        raise _http_error(exc) from exc
    return _trigger_response(summary)


@router.get("/jobs/{job_name}/status", response_model=JobStatusResponse)
def get_job_status(job_name: str) -> JobStatusResponse:
    try:
        job_status = runtime.job_runner.status(job_name)
    except (UnknownJobError, StoreError) as exc:
        raise _http_error(exc) from exc
    next_run_at = None
    if runtime.scheduler is not None and job_name == _settings.billing_job_name:
        next_run_at = runtime.scheduler.next_run_at
    return JobStatusResponse(
        job_name=job_status.job_name,
        running=job_status.running,
        last_run=_job_run_item(job_status.last_run) if job_status.last_run is not None else None,
        next_run_at=next_run_at,
    )


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(invoice_id: str | None = None) -> NotificationListResponse:
    try:
        records = runtime.store.list_notifications(invoice_id=invoice_id)
    except StoreError as exc:
        raise _http_error(exc) from exc
    return NotificationListResponse(items=[_notification_item(record) for record in records])


@router.get("/audit-log", response_model=AuditEntryListResponse)
def list_audit_entries(entity_id: str | None = None) -> AuditEntryListResponse:
    try:
        records = runtime.store.list_audit_entries(entity_id=entity_id)
    except StoreError as exc:
        raise _http_error(exc) from exc
    return AuditEntryListResponse(items=[_audit_entry_item(record) for record in records])
