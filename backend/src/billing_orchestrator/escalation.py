"""Follow-up escalation for unpaid invoices.

Each invoice climbs a fixed ladder of reminder levels. Level ``L`` becomes due
``delay(L)`` after the invoice was sent; a level is written to the store as a
``NOT_SENT`` follow-up log before the email goes out, and the unique
(invoice, level) constraint decides which caller owns the send. A failed send is
final for its level and the ladder continues with the next level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from .config import BillingConfig
from .delivery import EmailDelivery
from .errors import DeliveryError
from .models import EscalationOutcome, FollowUpProcessStatus
from .notifications import AuditTrail, NotificationSink, notify_safely
from .store import (
    AlreadyExists,
    BillingStore,
    FollowUpLogRecord,
    FollowUpResultPatch,
    FollowUpTrackingPatch,
    InvoiceRecord,
    _coerce_utc,
    _now_utc,
    new_record_id,
)
from .templates import TemplateResolver, render_follow_up

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationSchedule:
    delays: tuple[timedelta, ...]

    @classmethod
    def from_days(cls, days: Sequence[int]) -> EscalationSchedule:
        if not days:
            raise ValueError("escalation schedule needs at least one level")
        return cls(delays=tuple(timedelta(days=item) for item in days))

    @property
    def max_level(self) -> int:
        return len(self.delays)

    def delay_for(self, level: int) -> timedelta:
        if level < 1 or level > self.max_level:
            raise ValueError(f"no delay configured for level {level}")
        return self.delays[level - 1]


@dataclass(frozen=True)
class EscalationDecision:
    outcome: EscalationOutcome
    level: int
    due_at: datetime | None = None


@dataclass(frozen=True)
class FollowUpOutcome:
    invoice_id: str
    status: FollowUpProcessStatus
    level: int | None = None
    reason: str | None = None
    follow_up_log: FollowUpLogRecord | None = None
    delivery_error: DeliveryError | None = None


def next_level(logs: Sequence[FollowUpLogRecord]) -> int:
    return max((log.level for log in logs), default=0) + 1


class FollowUpEscalationPolicy:
    def __init__(
        self,
        *,
        store: BillingStore,
        delivery: EmailDelivery,
        templates: TemplateResolver,
        notifications: NotificationSink,
        audit: AuditTrail,
        config: BillingConfig,
    ) -> None:
        self._store = store
        self._delivery = delivery
        self._templates = templates
        self._notifications = notifications
        self._audit = audit
        self._config = config
        self.schedule = EscalationSchedule.from_days(config.follow_up_delay_days)

    def evaluate(
        self,
        invoice: InvoiceRecord,
        logs: Sequence[FollowUpLogRecord],
        now: datetime,
    ) -> EscalationDecision:
        level = next_level(logs)
        if level > self.schedule.max_level:
            return EscalationDecision(outcome="exhausted", level=level)
        if invoice.sent_at is None:
            return EscalationDecision(outcome="not_yet_due", level=level)
        due_at = invoice.sent_at + self.schedule.delay_for(level)
        already_logged = any(log.level == level for log in logs)
        if _coerce_utc(now) >= due_at and not already_logged:
            return EscalationDecision(outcome="due", level=level, due_at=due_at)
        return EscalationDecision(outcome="not_yet_due", level=level, due_at=due_at)

    def process(self, invoice_id: str, *, now: datetime | None = None, force: bool = False) -> FollowUpOutcome:
        """Send the next follow-up for an invoice if one is due.

        ``force`` sends the next level immediately, ignoring its delay but not
        the maximum level.
        """
        current = _coerce_utc(now) if now is not None else _now_utc()
        invoice = self._store.get_invoice(invoice_id)
        if invoice is None:
            return FollowUpOutcome(invoice_id=invoice_id, status="skipped", reason="invoice_not_found")
        if invoice.status != "SENT":
            return FollowUpOutcome(invoice_id=invoice_id, status="skipped", reason="not_awaiting_payment")
        if not invoice.follow_up_enabled:
            return FollowUpOutcome(invoice_id=invoice_id, status="skipped", reason="follow_up_disabled")
        if not invoice.customer_email:
            return FollowUpOutcome(invoice_id=invoice_id, status="skipped", reason="missing_recipient")

        logs = self._store.list_follow_up_logs(invoice_id)
        decision = self.evaluate(invoice, logs, current)
        if decision.outcome == "exhausted":
            return FollowUpOutcome(invoice_id=invoice_id, status="exhausted", level=decision.level)
        if decision.outcome == "not_yet_due" and not force:
            return FollowUpOutcome(invoice_id=invoice_id, status="not_yet_due", level=decision.level)

        level = decision.level
        template = self._templates.resolve(invoice, level)
        if template is None:
            logger.warning("no follow-up template for invoice %s level %s", invoice_id, level)
            return FollowUpOutcome(invoice_id=invoice_id, status="skipped", level=level, reason="template_missing")

        content = render_follow_up(template, invoice, now=current, company_name=self._config.company_name)
        claimed = self._store.insert_follow_up_log(
            FollowUpLogRecord(
                follow_up_log_id=new_record_id("ful"),
                invoice_id=invoice_id,
                level=level,
                recipient=invoice.customer_email,
                subject=content.subject,
                template_ref=template.template_ref,
                status="NOT_SENT",
                scheduled_at=decision.due_at or current,
                created_at=current,
            )
        )
        if isinstance(claimed, AlreadyExists):
            logger.info("follow-up level %s for invoice %s already claimed", level, invoice_id)
            return FollowUpOutcome(
                invoice_id=invoice_id,
                status="duplicate",
                level=level,
                follow_up_log=claimed.existing,
            )

        receipt = self._delivery.deliver(
            invoice,
            recipient=invoice.customer_email,
            kind="FOLLOW_UP",
            subject=content.subject,
            body=content.body,
            correlation_id=f"{invoice_id}-L{level}",
            now=current,
        )
        result = receipt.result
        if result.status == "SENT":
            patch = FollowUpResultPatch(
                status="SENT",
                provider_message_id=result.provider_message_id,
                error_message=None,
                sent_at=result.attempted_at,
            )
        else:
            patch = FollowUpResultPatch(
                status="FAILED",
                provider_message_id=None,
                error_message=result.error_message or result.error_code,
                sent_at=None,
            )
        log = self._store.complete_follow_up_log(claimed.record.follow_up_log_id, patch) or claimed.record

        if result.status != "SENT":
            self._audit.record("FOLLOW_UP_FAILED", entity_type="Invoice", entity_id=invoice_id,
                               details={"level": level, "error": log.error_message})
            return FollowUpOutcome(
                invoice_id=invoice_id,
                status="failed",
                level=level,
                follow_up_log=log,
                delivery_error=DeliveryError(log.error_message or "follow-up delivery failed",
                                             error_code=result.error_code),
            )

        sent_levels = sum(1 for item in self._store.list_follow_up_logs(invoice_id) if item.status == "SENT")
        self._store.update_invoice(
            invoice_id,
            FollowUpTrackingPatch(
                follow_up_count=sent_levels,
                last_follow_up_at=result.attempted_at,
                last_follow_up_level=level,
            ),
        )
        self._audit.record("FOLLOW_UP_SENT", entity_type="Invoice", entity_id=invoice_id,
                           details={"level": level, "message_id": result.provider_message_id})
        notify_safely(self._notifications, None, "INVOICE_FOLLOW_UP", {
            "invoice_id": invoice_id,
            "title": f"Follow-up {level} Sent",
            "message": f"Follow-up email (level {level}) sent for invoice {invoice.billing_no} to {invoice.customer_name}",
            "level": str(level),
        })
        logger.info("follow-up level %s sent for invoice %s", level, invoice_id)
        return FollowUpOutcome(invoice_id=invoice_id, status="sent", level=level, follow_up_log=log)
