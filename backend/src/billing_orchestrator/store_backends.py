from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from .errors import StoreError
from .models import to_money
from .store import (
    AlreadyExists,
    AuditEntryRecord,
    BillingStore,
    EmailLogRecord,
    EmailResultPatch,
    FollowUpLogRecord,
    FollowUpResultPatch,
    InMemoryBillingStore,
    Inserted,
    InsertOutcome,
    InvoiceRecord,
    InvoiceTransitionPatch,
    InvoiceUpdatePatch,
    JobFinishPatch,
    JobProgressPatch,
    JobRunRecord,
    NotificationRecord,
    PaymentRequestRecord,
    PaymentStatusPatch,
    _coerce_utc,
    _now_utc,
    patch_values,
)

logger = logging.getLogger(__name__)


def _to_cents(amount: Decimal) -> int:
    return int((to_money(amount) * 100).to_integral_value())


def _from_cents(amount_cents: int) -> Decimal:
    return to_money(Decimal(amount_cents) / 100)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


class BillingStoreBase(DeclarativeBase):
    pass


class _InvoiceRow(BillingStoreBase):
    __tablename__ = "billing_invoices"

    invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    billing_no: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    customer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    partner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    approved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reschedule_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_payment_request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    auto_send_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    follow_up_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    follow_up_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_follow_up_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_follow_up_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _EmailLogRow(BillingStoreBase):
    __tablename__ = "billing_email_logs"

    email_log_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("billing_invoices.invoice_id"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _FollowUpLogRow(BillingStoreBase):
    __tablename__ = "billing_follow_up_logs"
    __table_args__ = (UniqueConstraint("invoice_id", "level", name="uq_billing_follow_up_logs_invoice_level"),)

    follow_up_log_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("billing_invoices.invoice_id"), nullable=False, index=True
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    template_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    provider_message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _PaymentRequestRow(BillingStoreBase):
    __tablename__ = "billing_payment_requests"
    __table_args__ = (
        Index(
            "uq_billing_payment_requests_pending_invoice",
            "invoice_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    payment_request_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("billing_invoices.invoice_id"), nullable=False, index=True
    )
    external_request_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    checkout_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _JobRunRow(BillingStoreBase):
    __tablename__ = "billing_job_runs"
    __table_args__ = (
        Index(
            "uq_billing_job_runs_running_job_name",
            "job_name",
            unique=True,
            sqlite_where=text("status = 'RUNNING'"),
            postgresql_where=text("status = 'RUNNING'"),
        ),
        Index("ix_billing_job_runs_job_name_started_at", "job_name", "started_at"),
    )

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    follow_up_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resubmitted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _NotificationRow(BillingStoreBase):
    __tablename__ = "billing_notifications"

    notification_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    target: Mapped[str | None] = mapped_column(String(128), nullable=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class _AuditEntryRow(BillingStoreBase):
    __tablename__ = "billing_audit_entries"

    audit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    details_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def _invoice_record(row: _InvoiceRow) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id=row.invoice_id,
        billing_no=row.billing_no,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        partner_id=row.partner_id,
        amount=_from_cents(row.amount_cents),
        currency=row.currency,
        due_date=row.due_date,
        status=row.status,  # type: ignore[arg-type]
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        approved_by=row.approved_by,
        approved_at=_optional_utc(row.approved_at),
        rejected_by=row.rejected_by,
        rejected_at=_optional_utc(row.rejected_at),
        rejection_reason=row.rejection_reason,
        reschedule_date=row.reschedule_date,
        sent_at=_optional_utc(row.sent_at),
        paid_at=_optional_utc(row.paid_at),
        paid_payment_request_id=row.paid_payment_request_id,
        auto_send_enabled=row.auto_send_enabled,
        follow_up_enabled=row.follow_up_enabled,
        follow_up_count=row.follow_up_count,
        last_follow_up_at=_optional_utc(row.last_follow_up_at),
        last_follow_up_level=row.last_follow_up_level,
    )


def _email_log_record(row: _EmailLogRow) -> EmailLogRecord:
    return EmailLogRecord(
        email_log_id=row.email_log_id,
        invoice_id=row.invoice_id,
        kind=row.kind,  # type: ignore[arg-type]
        recipient=row.recipient,
        subject=row.subject,
        status=row.status,  # type: ignore[arg-type]
        created_at=_coerce_utc(row.created_at),
        provider_message_id=row.provider_message_id,
        error_message=row.error_message,
        sent_at=_optional_utc(row.sent_at),
    )


def _follow_up_log_record(row: _FollowUpLogRow) -> FollowUpLogRecord:
    return FollowUpLogRecord(
        follow_up_log_id=row.follow_up_log_id,
        invoice_id=row.invoice_id,
        level=row.level,
        recipient=row.recipient,
        subject=row.subject,
        template_ref=row.template_ref,
        status=row.status,  # type: ignore[arg-type]
        scheduled_at=_coerce_utc(row.scheduled_at),
        created_at=_coerce_utc(row.created_at),
        provider_message_id=row.provider_message_id,
        error_message=row.error_message,
        sent_at=_optional_utc(row.sent_at),
    )


def _payment_request_record(row: _PaymentRequestRow) -> PaymentRequestRecord:
    return PaymentRequestRecord(
        payment_request_id=row.payment_request_id,
        invoice_id=row.invoice_id,
        external_request_id=row.external_request_id,
        checkout_url=row.checkout_url,
        amount=_from_cents(row.amount_cents),
        currency=row.currency,
        status=row.status,  # type: ignore[arg-type]
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        payment_method=row.payment_method,
        payment_reference=row.payment_reference,
        paid_at=_optional_utc(row.paid_at),
    )


def _job_run_record(row: _JobRunRow) -> JobRunRecord:
    return JobRunRecord(
        run_id=row.run_id,
        job_name=row.job_name,
        status=row.status,  # type: ignore[arg-type]
        started_at=_coerce_utc(row.started_at),
        created_at=_coerce_utc(row.created_at),
        items_processed=row.items_processed,
        items_failed=row.items_failed,
        sent_count=row.sent_count,
        follow_up_count=row.follow_up_count,
        resubmitted_count=row.resubmitted_count,
        error_detail=row.error_detail,
        finished_at=_optional_utc(row.finished_at),
    )


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("billing store %s failed: %s", operation, exc)
        raise StoreError(f"{operation} failed: {exc.__class__.__name__}") from exc


class SqlAlchemyBillingStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for BILLING_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            BillingStoreBase.metadata.create_all(self._engine)

    def _session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with _store_errors("reset"), self._session() as session:
            with session.begin():
                session.execute(delete(_AuditEntryRow))
                session.execute(delete(_NotificationRow))
                session.execute(delete(_JobRunRow))
                session.execute(delete(_PaymentRequestRow))
                session.execute(delete(_FollowUpLogRow))
                session.execute(delete(_EmailLogRow))
                session.execute(delete(_InvoiceRow))

    # -- invoices -----------------------------------------------------------

    def insert_invoice(self, record: InvoiceRecord) -> InsertOutcome[InvoiceRecord]:
        values = {**record.__dict__}
        values["amount_cents"] = _to_cents(values.pop("amount"))
        with _store_errors("insert invoice"):
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(_InvoiceRow(**values))
            except IntegrityError:
                with self._session() as session:
                    row = session.execute(
                        select(_InvoiceRow).where(_InvoiceRow.billing_no == record.billing_no)
                    ).scalar_one()
                    return AlreadyExists(_invoice_record(row))
        return Inserted(record)

    def get_invoice(self, invoice_id: str) -> InvoiceRecord | None:
        with _store_errors("get invoice"), self._session() as session:
            row = session.get(_InvoiceRow, invoice_id)
            return _invoice_record(row) if row is not None else None

    def list_invoices(self, *, status: str | None = None) -> list[InvoiceRecord]:
        query = select(_InvoiceRow).order_by(_InvoiceRow.created_at.asc(), _InvoiceRow.invoice_id.asc())
        if status is not None:
            query = query.where(_InvoiceRow.status == status)
        with _store_errors("list invoices"), self._session() as session:
            return [_invoice_record(row) for row in session.execute(query).scalars()]

    def transition_invoice(
        self,
        invoice_id: str,
        *,
        expected_status: str,
        patch: InvoiceTransitionPatch,
    ) -> InvoiceRecord | None:
        statement = (
            update(_InvoiceRow)
            .where(_InvoiceRow.invoice_id == invoice_id, _InvoiceRow.status == expected_status)
            .values(**patch_values(patch), updated_at=_now_utc())
            .execution_options(synchronize_session=False)
        )
        return self._update_invoice(statement, invoice_id, operation="transition invoice")

    def update_invoice(self, invoice_id: str, patch: InvoiceUpdatePatch) -> InvoiceRecord | None:
        statement = (
            update(_InvoiceRow)
            .where(_InvoiceRow.invoice_id == invoice_id)
            .values(**patch_values(patch), updated_at=_now_utc())
            .execution_options(synchronize_session=False)
        )
        return self._update_invoice(statement, invoice_id, operation="update invoice")

    def _update_invoice(self, statement, invoice_id: str, *, operation: str) -> InvoiceRecord | None:
        with _store_errors(operation), self._session() as session:
            with session.begin():
                result = session.execute(statement)
                if result.rowcount == 0:
                    return None
                row = session.get(_InvoiceRow, invoice_id, populate_existing=True)
                return _invoice_record(row) if row is not None else None

    # -- email logs ---------------------------------------------------------

    def insert_email_log(self, record: EmailLogRecord) -> EmailLogRecord:
        with _store_errors("insert email log"), self._session() as session:
            with session.begin():
                session.add(_EmailLogRow(**record.__dict__))
        return record

    def complete_email_log(self, email_log_id: str, patch: EmailResultPatch) -> EmailLogRecord | None:
        with _store_errors("complete email log"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_EmailLogRow)
                    .where(_EmailLogRow.email_log_id == email_log_id, _EmailLogRow.status == "QUEUED")
                    .values(**patch_values(patch))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                row = session.get(_EmailLogRow, email_log_id, populate_existing=True)
                return _email_log_record(row) if row is not None else None

    def list_email_logs(self, invoice_id: str) -> list[EmailLogRecord]:
        with _store_errors("list email logs"), self._session() as session:
            rows = session.execute(
                select(_EmailLogRow)
                .where(_EmailLogRow.invoice_id == invoice_id)
                .order_by(_EmailLogRow.created_at.asc(), _EmailLogRow.email_log_id.asc())
            ).scalars()
            return [_email_log_record(row) for row in rows]

    # -- follow-up logs -----------------------------------------------------

    def insert_follow_up_log(self, record: FollowUpLogRecord) -> InsertOutcome[FollowUpLogRecord]:
        with _store_errors("insert follow-up log"):
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(_FollowUpLogRow(**record.__dict__))
            except IntegrityError:
                with self._session() as session:
                    row = session.execute(
                        select(_FollowUpLogRow).where(
                            _FollowUpLogRow.invoice_id == record.invoice_id,
                            _FollowUpLogRow.level == record.level,
                        )
                    ).scalar_one()
                    return AlreadyExists(_follow_up_log_record(row))
        return Inserted(record)

    def complete_follow_up_log(
        self, follow_up_log_id: str, patch: FollowUpResultPatch
    ) -> FollowUpLogRecord | None:
        with _store_errors("complete follow-up log"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_FollowUpLogRow)
                    .where(
                        _FollowUpLogRow.follow_up_log_id == follow_up_log_id,
                        _FollowUpLogRow.status == "NOT_SENT",
                    )
                    .values(**patch_values(patch))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                row = session.get(_FollowUpLogRow, follow_up_log_id, populate_existing=True)
                return _follow_up_log_record(row) if row is not None else None

    def list_follow_up_logs(self, invoice_id: str) -> list[FollowUpLogRecord]:
        with _store_errors("list follow-up logs"), self._session() as session:
            rows = session.execute(
                select(_FollowUpLogRow)
                .where(_FollowUpLogRow.invoice_id == invoice_id)
                .order_by(_FollowUpLogRow.level.asc())
            ).scalars()
            return [_follow_up_log_record(row) for row in rows]

    # -- payment requests ---------------------------------------------------

    def insert_payment_request(self, record: PaymentRequestRecord) -> InsertOutcome[PaymentRequestRecord]:
        values = {**record.__dict__}
        values["amount_cents"] = _to_cents(values.pop("amount"))
        with _store_errors("insert payment request"):
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(_PaymentRequestRow(**values))
            except IntegrityError:
                with self._session() as session:
                    row = session.execute(
                        select(_PaymentRequestRow).where(
                            _PaymentRequestRow.external_request_id == record.external_request_id
                        )
                    ).scalar_one_or_none()
                    if row is None:
                        row = session.execute(
                            select(_PaymentRequestRow).where(
                                _PaymentRequestRow.invoice_id == record.invoice_id,
                                _PaymentRequestRow.status == "PENDING",
                            )
                        ).scalar_one()
                    return AlreadyExists(_payment_request_record(row))
        return Inserted(record)

    def get_payment_request_by_external_id(self, external_request_id: str) -> PaymentRequestRecord | None:
        with _store_errors("get payment request"), self._session() as session:
            row = session.execute(
                select(_PaymentRequestRow).where(_PaymentRequestRow.external_request_id == external_request_id)
            ).scalar_one_or_none()
            return _payment_request_record(row) if row is not None else None

    def list_payment_requests(self, invoice_id: str) -> list[PaymentRequestRecord]:
        with _store_errors("list payment requests"), self._session() as session:
            rows = session.execute(
                select(_PaymentRequestRow)
                .where(_PaymentRequestRow.invoice_id == invoice_id)
                .order_by(_PaymentRequestRow.created_at.asc(), _PaymentRequestRow.payment_request_id.asc())
            ).scalars()
            return [_payment_request_record(row) for row in rows]

    def advance_payment_request(
        self,
        payment_request_id: str,
        *,
        expected_status: str,
        patch: PaymentStatusPatch,
    ) -> PaymentRequestRecord | None:
        with _store_errors("advance payment request"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_PaymentRequestRow)
                    .where(
                        _PaymentRequestRow.payment_request_id == payment_request_id,
                        _PaymentRequestRow.status == expected_status,
                    )
                    .values(**patch_values(patch), updated_at=_now_utc())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                row = session.get(_PaymentRequestRow, payment_request_id, populate_existing=True)
                return _payment_request_record(row) if row is not None else None

    # -- job runs -----------------------------------------------------------

    def start_job_run(self, record: JobRunRecord) -> InsertOutcome[JobRunRecord]:
        with _store_errors("start job run"):
            try:
                with self._session() as session:
                    with session.begin():
                        session.add(_JobRunRow(**record.__dict__))
            except IntegrityError:
                existing = self.get_running_job_run(record.job_name)
                if existing is None:
                    raise StoreError(f"job run for {record.job_name} conflicted without a running row")
                return AlreadyExists(existing)
        return Inserted(record)

    def record_job_progress(self, run_id: str, patch: JobProgressPatch) -> JobRunRecord | None:
        with _store_errors("record job progress"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_JobRunRow)
                    .where(
                        _JobRunRow.run_id == run_id,
                        _JobRunRow.status == "RUNNING",
                        _JobRunRow.items_processed <= patch.items_processed,
                    )
                    .values(**patch_values(patch))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                row = session.get(_JobRunRow, run_id, populate_existing=True)
                return _job_run_record(row) if row is not None else None

    def finish_job_run(self, run_id: str, patch: JobFinishPatch) -> JobRunRecord | None:
        with _store_errors("finish job run"), self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_JobRunRow)
                    .where(_JobRunRow.run_id == run_id, _JobRunRow.status == "RUNNING")
                    .values(**patch_values(patch))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                row = session.get(_JobRunRow, run_id, populate_existing=True)
                return _job_run_record(row) if row is not None else None

    def get_job_run(self, run_id: str) -> JobRunRecord | None:
        with _store_errors("get job run"), self._session() as session:
            row = session.get(_JobRunRow, run_id)
            return _job_run_record(row) if row is not None else None

    def get_running_job_run(self, job_name: str) -> JobRunRecord | None:
        with _store_errors("get running job run"), self._session() as session:
            row = session.execute(
                select(_JobRunRow).where(_JobRunRow.job_name == job_name, _JobRunRow.status == "RUNNING")
            ).scalar_one_or_none()
            return _job_run_record(row) if row is not None else None

    def get_latest_job_run(self, job_name: str) -> JobRunRecord | None:
        with _store_errors("get latest job run"), self._session() as session:
            row = session.execute(
                select(_JobRunRow)
                .where(_JobRunRow.job_name == job_name)
                .order_by(_JobRunRow.started_at.desc(), _JobRunRow.created_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _job_run_record(row) if row is not None else None

    # -- notifications and audit --------------------------------------------

    def insert_notification(self, record: NotificationRecord) -> NotificationRecord:
        with _store_errors("insert notification"), self._session() as session:
            with session.begin():
                session.add(
                    _NotificationRow(
                        notification_id=record.notification_id,
                        target=record.target,
                        event_type=record.event_type,
                        title=record.title,
                        message=record.message,
                        invoice_id=record.invoice_id,
                        payload_json=json.dumps(record.payload, sort_keys=True),
                        created_at=record.created_at,
                    )
                )
        return record

    def list_notifications(self, *, invoice_id: str | None = None) -> list[NotificationRecord]:
        query = select(_NotificationRow).order_by(
            _NotificationRow.created_at.asc(), _NotificationRow.notification_id.asc()
        )
        if invoice_id is not None:
            query = query.where(_NotificationRow.invoice_id == invoice_id)
        with _store_errors("list notifications"), self._session() as session:
            return [
                NotificationRecord(
                    notification_id=row.notification_id,
                    target=row.target,
                    event_type=row.event_type,  # type: ignore[arg-type]
                    title=row.title,
                    message=row.message,
                    invoice_id=row.invoice_id,
                    payload=json.loads(row.payload_json),
                    created_at=_coerce_utc(row.created_at),
                )
                for row in session.execute(query).scalars()
            ]

    def insert_audit_entry(self, record: AuditEntryRecord) -> AuditEntryRecord:
        with _store_errors("insert audit entry"), self._session() as session:
            with session.begin():
                session.add(
                    _AuditEntryRow(
                        audit_id=record.audit_id,
                        action=record.action,
                        entity_type=record.entity_type,
                        entity_id=record.entity_id,
                        actor_id=record.actor_id,
                        details_json=json.dumps(record.details, sort_keys=True),
                        created_at=record.created_at,
                    )
                )
        return record

    def list_audit_entries(self, *, entity_id: str | None = None) -> list[AuditEntryRecord]:
        query = select(_AuditEntryRow).order_by(_AuditEntryRow.created_at.asc(), _AuditEntryRow.audit_id.asc())
        if entity_id is not None:
            query = query.where(_AuditEntryRow.entity_id == entity_id)
        with _store_errors("list audit entries"), self._session() as session:
            return [
                AuditEntryRecord(
                    audit_id=row.audit_id,
                    action=row.action,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    actor_id=row.actor_id,
                    details=json.loads(row.details_json),
                    created_at=_coerce_utc(row.created_at),
                )
                for row in session.execute(query).scalars()
            ]


def create_billing_store(*, backend: str, database_url: str) -> BillingStore:
    normalized = backend.strip().lower()
    if normalized in {"postgres", "sqlalchemy"}:
        return SqlAlchemyBillingStore(database_url)
    if normalized == "inmemory":
        return InMemoryBillingStore()
    raise RuntimeError(f"unsupported BILLING_STORE_BACKEND: {backend}")
