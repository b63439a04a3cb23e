from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Mapping, Protocol

from .store import InvoiceRecord


@dataclass(frozen=True)
class FollowUpTemplate:
    template_ref: str
    subject: str
    body: str


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    body: str


DEFAULT_FOLLOW_UP_TEMPLATES: dict[int, FollowUpTemplate] = {
    1: FollowUpTemplate(
        template_ref="default-level-1",
        subject="Friendly reminder: Bill No. {billing_no}",
        body=(
            "This is a friendly reminder that Bill No. {billing_no} for {total_amount} "
            "was due on {due_date}. If you have already settled it, please send us a copy "
            "of your proof of payment."
        ),
    ),
    2: FollowUpTemplate(
        template_ref="default-level-2",
        subject="Second reminder: Bill No. {billing_no} is {days_overdue} days overdue",
        body=(
            "Our records show Bill No. {billing_no} for {total_amount} is still open, "
            "{days_overdue} days past its due date of {due_date}. Kindly arrange payment "
            "at your earliest convenience."
        ),
    ),
    3: FollowUpTemplate(
        template_ref="default-level-3",
        subject="Final notice: Bill No. {billing_no}",
        body=(
            "This is our final reminder for Bill No. {billing_no} ({total_amount}), now "
            "{days_overdue} days overdue. Please settle the balance or contact us "
            "so we can help resolve it."
        ),
    ),
}


class TemplateResolver(Protocol):
    def resolve(self, invoice: InvoiceRecord, level: int) -> FollowUpTemplate | None: ...


class StaticTemplateResolver:
    """Per-level defaults with optional per-partner overrides."""

    def __init__(
        self,
        *,
        defaults: Mapping[int, FollowUpTemplate] | None = None,
        partner_overrides: Mapping[str, Mapping[int, FollowUpTemplate]] | None = None,
    ) -> None:
        self._defaults = dict(DEFAULT_FOLLOW_UP_TEMPLATES if defaults is None else defaults)
        self._partner_overrides = {key: dict(value) for key, value in (partner_overrides or {}).items()}

    def resolve(self, invoice: InvoiceRecord, level: int) -> FollowUpTemplate | None:
        if invoice.partner_id is not None:
            template = self._partner_overrides.get(invoice.partner_id, {}).get(level)
            if template is not None:
                return template
        return self._defaults.get(level)


def days_overdue(due_date: date | None, now: datetime) -> int:
    if due_date is None:
        return 0
    return max(0, (now.date() - due_date).days)


def placeholder_values(invoice: InvoiceRecord, *, now: datetime, company_name: str) -> dict[str, str]:
    return {
        "customer_name": invoice.customer_name,
        "billing_no": invoice.billing_no,
        "due_date": invoice.due_date.strftime("%B %d, %Y") if invoice.due_date else "N/A",
        "total_amount": f"{invoice.currency} {invoice.amount:,.2f}",
        "days_overdue": str(days_overdue(invoice.due_date, now)),
        "company_name": company_name,
    }


class _KeepUnknown(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def render(text: str, values: Mapping[str, str]) -> str:
    return text.format_map(_KeepUnknown(values))


def render_follow_up(
    template: FollowUpTemplate,
    invoice: InvoiceRecord,
    *,
    now: datetime,
    company_name: str,
) -> RenderedEmail:
    values = placeholder_values(invoice, now=now, company_name=company_name)
    body = render(template.body, values)
    return RenderedEmail(
        subject=render(template.subject, values),
        body=f"Dear {invoice.customer_name},\n\n{body}\n\nThank you,\n{company_name}",
    )


def render_invoice_email(invoice: InvoiceRecord, *, now: datetime, company_name: str) -> RenderedEmail:
    values = placeholder_values(invoice, now=now, company_name=company_name)
    return RenderedEmail(
        subject=render("Bill No. {billing_no} | {customer_name}", values),
        body=render(
            "Dear {customer_name},\n\n"
            "Please find your billing statement {billing_no} for {total_amount}, due on {due_date}.\n\n"
            "Kindly reply to this email to confirm receipt. If payment has already been made, "
            "please send us a copy of your proof of payment.\n\n"
            "Thank you,\n{company_name}",
            values,
        ),
    )
