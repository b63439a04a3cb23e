from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Literal

from .config import BillingConfig
from .errors import (
    BillingValidationError,
    DeliveryError,
    InvalidTransitionError,
    InvoiceNotFoundError,
    JobAlreadyRunningError,
    StoreError,
    UnknownJobError,
)
from .escalation import FollowUpEscalationPolicy
from .state_machine import InvoiceStateMachine
from .store import (
    AlreadyExists,
    BillingStore,
    InvoiceRecord,
    JobFinishPatch,
    JobProgressPatch,
    JobRunRecord,
    _coerce_utc,
    _now_utc,
    new_record_id,
)

logger = logging.getLogger(__name__)

JobAction = Literal["resubmit", "send", "follow_up"]

# Per-invoice failures that are recorded against the item instead of aborting the cycle.
ITEM_ERRORS = (BillingValidationError, InvalidTransitionError, DeliveryError, InvoiceNotFoundError)


@dataclass(frozen=True)
class JobItemResult:
    invoice_id: str
    action: JobAction
    outcome: str
    error: str | None = None


@dataclass(frozen=True)
class JobRunSummary:
    run: JobRunRecord
    items: tuple[JobItemResult, ...]


@dataclass(frozen=True)
class JobStatus:
    job_name: str
    running: bool
    last_run: JobRunRecord | None


@dataclass
class _Counters:
    items_processed: int = 0
    items_failed: int = 0
    sent_count: int = 0
    follow_up_count: int = 0
    resubmitted_count: int = 0
    items: list[JobItemResult] = field(default_factory=list)

    def add(self, item: JobItemResult) -> None:
        self.items.append(item)
        self.items_processed += 1
        if item.error is not None:
            self.items_failed += 1
        elif item.action == "send" and item.outcome == "sent":
            self.sent_count += 1
        elif item.action == "follow_up" and item.outcome == "sent":
            self.follow_up_count += 1
        elif item.action == "resubmit" and item.outcome == "resubmitted":
            self.resubmitted_count += 1

    def progress(self) -> JobProgressPatch:
        return JobProgressPatch(
            items_processed=self.items_processed,
            items_failed=self.items_failed,
            sent_count=self.sent_count,
            follow_up_count=self.follow_up_count,
            resubmitted_count=self.resubmitted_count,
        )

    def finish(self, status: Literal["COMPLETED", "FAILED"], finished_at: datetime, error_detail: str | None = None) -> JobFinishPatch:
        return JobFinishPatch(
            status=status,
            finished_at=finished_at,
            items_processed=self.items_processed,
            items_failed=self.items_failed,
            sent_count=self.sent_count,
            follow_up_count=self.follow_up_count,
            resubmitted_count=self.resubmitted_count,
            error_detail=error_detail,
        )


class JobRunner:
    """Runs named billing jobs with at most one RUNNING run per name."""

    def __init__(
        self,
        *,
        store: BillingStore,
        state_machine: InvoiceStateMachine,
        escalation: FollowUpEscalationPolicy,
        config: BillingConfig,
        job_name: str = "billing-cycle",
    ) -> None:
        self._store = store
        self._state_machine = state_machine
        self._escalation = escalation
        self._config = config
        self._handlers: dict[str, Callable[[datetime, _ProgressRecorder], None]] = {job_name: self._billing_cycle}

    @property
    def job_names(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def start(self, job_name: str, *, now: datetime | None = None) -> JobRunRecord:
        if job_name not in self._handlers:
            raise UnknownJobError(job_name)
        current = _coerce_utc(now) if now is not None else _now_utc()
        record = JobRunRecord(
            run_id=new_record_id("job"),
            job_name=job_name,
            status="RUNNING",
            started_at=current,
            created_at=current,
        )
        outcome = self._store.start_job_run(record)
        if isinstance(outcome, AlreadyExists):
            running = outcome.existing
            if not self._is_stale(running, current):
                raise JobAlreadyRunningError(job_name, running.run_id)
            logger.warning("job %s run %s started %s is stale; marking failed", job_name, running.run_id, running.started_at)
            self._store.finish_job_run(
                running.run_id,
                JobFinishPatch(
                    status="FAILED",
                    finished_at=current,
                    items_processed=running.items_processed,
                    items_failed=running.items_failed,
                    sent_count=running.sent_count,
                    follow_up_count=running.follow_up_count,
                    resubmitted_count=running.resubmitted_count,
                    error_detail="run abandoned without finishing",
                ),
            )
            outcome = self._store.start_job_run(record)
            if isinstance(outcome, AlreadyExists):
                raise JobAlreadyRunningError(job_name, outcome.existing.run_id)
        logger.info("job %s started run %s", job_name, record.run_id)
        return outcome.record

    def run(self, job_name: str, *, now: datetime | None = None) -> JobRunSummary:
        current = _coerce_utc(now) if now is not None else _now_utc()
        run = self.start(job_name, now=current)
        counters = _Counters()
        try:
            self._handlers[job_name](current, _ProgressRecorder(self._store, run.run_id, counters))
        except Exception as exc:
            detail = f"{exc.__class__.__name__}: {exc}"
            logger.error("job %s run %s aborted: %s", job_name, run.run_id, detail)
            try:
                self._store.finish_job_run(run.run_id, counters.finish("FAILED", max(current, _now_utc()), detail))
            except StoreError as finish_exc:
                logger.error("job %s run %s could not be marked failed: %s", job_name, run.run_id, finish_exc)
            raise

        finished = self._store.finish_job_run(run.run_id, counters.finish("COMPLETED", max(current, _now_utc())))
        if finished is None:
            # Another worker superseded this run as stale; its final status stands.
            superseded = self._store.get_job_run(run.run_id) or run
            logger.warning(
                "job %s run %s was finished elsewhere as %s before completing; %s items processed",
                job_name,
                run.run_id,
                superseded.status,
                counters.items_processed,
            )
            return JobRunSummary(run=superseded, items=tuple(counters.items))
        logger.info(
            "job %s run %s completed: processed=%s failed=%s sent=%s follow_ups=%s resubmitted=%s",
            job_name,
            run.run_id,
            finished.items_processed,
            finished.items_failed,
            finished.sent_count,
            finished.follow_up_count,
            finished.resubmitted_count,
        )
        return JobRunSummary(run=finished, items=tuple(counters.items))

    def status(self, job_name: str) -> JobStatus:
        if job_name not in self._handlers:
            raise UnknownJobError(job_name)
        running = self._store.get_running_job_run(job_name)
        return JobStatus(
            job_name=job_name,
            running=running is not None,
            last_run=self._store.get_latest_job_run(job_name),
        )

    def _is_stale(self, run: JobRunRecord, now: datetime) -> bool:
        stale_after = self._config.job_run_stale_after_seconds
        if stale_after <= 0:
            return False
        return now - run.started_at > timedelta(seconds=stale_after)

    def _billing_cycle(self, now: datetime, recorder: _ProgressRecorder) -> None:
        rescheduled = [
            invoice
            for invoice in self._store.list_invoices(status="REJECTED")
            if invoice.reschedule_date is not None and invoice.reschedule_date <= now.date()
        ]
        approved = [invoice for invoice in self._store.list_invoices(status="APPROVED") if invoice.auto_send_enabled]
        awaiting_payment = [
            invoice for invoice in self._store.list_invoices(status="SENT") if invoice.follow_up_enabled
        ]

        for invoice in rescheduled:
            recorder.record(self._run_item(invoice, "resubmit", now))
        for invoice in approved:
            recorder.record(self._run_item(invoice, "send", now))
        for invoice in awaiting_payment:
            recorder.record(self._run_item(invoice, "follow_up", now))

    def _run_item(self, invoice: InvoiceRecord, action: JobAction, now: datetime) -> JobItemResult:
        try:
            if action == "resubmit":
                result = self._state_machine.resubmit(invoice.invoice_id)
                outcome = "resubmitted" if result.changed else "unchanged"
            elif action == "send":
                dispatch = self._state_machine.mark_sent(invoice.invoice_id, now=now)
                if not dispatch.changed:
                    outcome = "unchanged"
                elif dispatch.delivery_error is not None:
                    return JobItemResult(invoice.invoice_id, action, "sent_with_delivery_error",
                                         error=dispatch.delivery_error.message)
                else:
                    outcome = "sent"
            else:
                follow_up = self._escalation.process(invoice.invoice_id, now=now)
                if follow_up.delivery_error is not None:
                    return JobItemResult(invoice.invoice_id, action, follow_up.status,
                                         error=follow_up.delivery_error.message)
                outcome = follow_up.status
        except StoreError:
            raise
        except ITEM_ERRORS as exc:
            logger.warning("job item %s for invoice %s failed: %s", action, invoice.invoice_id, exc)
            return JobItemResult(invoice.invoice_id, action, "error", error=str(exc))
        except Exception as exc:
            logger.exception("job item %s for invoice %s raised unexpectedly", action, invoice.invoice_id)
            return JobItemResult(invoice.invoice_id, action, "error", error=f"{exc.__class__.__name__}: {exc}")
        return JobItemResult(invoice.invoice_id, action, outcome)


class _ProgressRecorder:
    def __init__(self, store: BillingStore, run_id: str, counters: _Counters) -> None:
        self._store = store
        self._run_id = run_id
        self._counters = counters

    def record(self, item: JobItemResult) -> None:
        self._counters.add(item)
        self._store.record_job_progress(self._run_id, self._counters.progress())
