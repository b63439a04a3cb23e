from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

from billing_orchestrator.store import InvoiceRecord
from billing_orchestrator.templates import (
    DEFAULT_FOLLOW_UP_TEMPLATES,
    FollowUpTemplate,
    days_overdue,
    render,
    render_follow_up,
    render_invoice_email,
)

NOW = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


def _invoice(due_date: date | None = date(2026, 3, 10)) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id="inv_1",
        billing_no="BN-7001",
        customer_name="Harbor Pharmacy",
        customer_email="ap@harbor.example.com",
        partner_id=None,
        amount=Decimal("12500"),
        currency="PHP",
        due_date=due_date,
        status="SENT",
        created_at=NOW,
        updated_at=NOW,
    )


def test_days_overdue_never_negative() -> None:
    assert days_overdue(date(2026, 3, 10), NOW) == 10
    assert days_overdue(date(2026, 4, 1), NOW) == 0
    assert days_overdue(None, NOW) == 0


def test_render_keeps_unknown_placeholders() -> None:
    assert render("Hi {customer_name}, ref {po_number}", {"customer_name": "Ana"}) == "Hi Ana, ref {po_number}"


def test_level_two_follow_up_mentions_overdue_days() -> None:
    rendered = render_follow_up(DEFAULT_FOLLOW_UP_TEMPLATES[2], _invoice(), now=NOW, company_name="Acme Billing")

    assert rendered.subject == "Second reminder: Bill No. BN-7001 is 10 days overdue"
    assert "PHP 12,500.00" in rendered.body
    assert "March 10, 2026" in rendered.body
    assert rendered.body.startswith("Dear Harbor Pharmacy,")
    assert rendered.body.endswith("Acme Billing")


def test_invoice_email_without_due_date() -> None:
    rendered = render_invoice_email(_invoice(due_date=None), now=NOW, company_name="Acme Billing")

    assert rendered.subject == "Bill No. BN-7001 | Harbor Pharmacy"
    assert "due on N/A" in rendered.body


def test_custom_template_fields() -> None:
    template = FollowUpTemplate(template_ref="custom", subject="{company_name}: {billing_no}", body="{total_amount}")

    rendered = render_follow_up(template, _invoice(), now=NOW, company_name="Acme Billing")

    assert rendered.subject == "Acme Billing: BN-7001"
    assert "PHP 12,500.00" in rendered.body
