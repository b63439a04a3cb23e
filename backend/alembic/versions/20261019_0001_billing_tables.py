"""Create invoice, email log, follow-up log, payment request, job run, notification, and audit tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "billing_invoices",
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("billing_no", sa.String(length=64), nullable=False),
        sa.Column("customer_name", sa.String(length=256), nullable=False),
        sa.Column("customer_email", sa.String(length=320), nullable=True),
        sa.Column("partner_id", sa.String(length=128), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("approved_by", sa.String(length=128), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_by", sa.String(length=128), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("reschedule_date", sa.Date(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paid_payment_request_id", sa.String(length=64), nullable=True),
        sa.Column("auto_send_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("follow_up_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("follow_up_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_follow_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_follow_up_level", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("invoice_id"),
        sa.UniqueConstraint("billing_no"),
    )
    op.create_index("ix_billing_invoices_status", "billing_invoices", ["status"], unique=False)

    op.create_table(
        "billing_email_logs",
        sa.Column("email_log_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("recipient", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=512), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["invoice_id"], ["billing_invoices.invoice_id"]),
        sa.PrimaryKeyConstraint("email_log_id"),
    )
    op.create_index("ix_billing_email_logs_invoice_id", "billing_email_logs", ["invoice_id"], unique=False)

    op.create_table(
        "billing_follow_up_logs",
        sa.Column("follow_up_log_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False),
        sa.Column("recipient", sa.String(length=320), nullable=False),
        sa.Column("subject", sa.String(length=512), nullable=False),
        sa.Column("template_ref", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("provider_message_id", sa.String(length=256), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["billing_invoices.invoice_id"]),
        sa.PrimaryKeyConstraint("follow_up_log_id"),
        sa.UniqueConstraint("invoice_id", "level", name="uq_billing_follow_up_logs_invoice_level"),
    )
    op.create_index("ix_billing_follow_up_logs_invoice_id", "billing_follow_up_logs", ["invoice_id"], unique=False)

    op.create_table(
        "billing_payment_requests",
        sa.Column("payment_request_id", sa.String(length=64), nullable=False),
        sa.Column("invoice_id", sa.String(length=64), nullable=False),
        sa.Column("external_request_id", sa.String(length=128), nullable=False),
        sa.Column("checkout_url", sa.String(length=1024), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("payment_method", sa.String(length=64), nullable=True),
        sa.Column("payment_reference", sa.String(length=128), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["invoice_id"], ["billing_invoices.invoice_id"]),
        sa.PrimaryKeyConstraint("payment_request_id"),
        sa.UniqueConstraint("external_request_id"),
    )
    op.create_index(
        "ix_billing_payment_requests_invoice_id",
        "billing_payment_requests",
        ["invoice_id"],
        unique=False,
    )
    op.create_index(
        "uq_billing_payment_requests_pending_invoice",
        "billing_payment_requests",
        ["invoice_id"],
        unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "billing_job_runs",
        sa.Column("run_id", sa.String(length=64), nullable=False),
        sa.Column("job_name", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("follow_up_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("resubmitted_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "uq_billing_job_runs_running_job_name",
        "billing_job_runs",
        ["job_name"],
        unique=True,
        sqlite_where=sa.text("status = 'RUNNING'"),
        postgresql_where=sa.text("status = 'RUNNING'"),
    )
    op.create_index(
        "ix_billing_job_runs_job_name_started_at",
        "billing_job_runs",
        ["job_name", "started_at"],
        unique=False,
    )

    op.create_table(
        "billing_notifications",
        sa.Column("notification_id", sa.String(length=64), nullable=False),
        sa.Column("target", sa.String(length=128), nullable=True),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("invoice_id", sa.String(length=64), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("notification_id"),
    )
    op.create_index("ix_billing_notifications_invoice_id", "billing_notifications", ["invoice_id"], unique=False)
    op.create_index("ix_billing_notifications_created_at", "billing_notifications", ["created_at"], unique=False)

    op.create_table(
        "billing_audit_entries",
        sa.Column("audit_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("audit_id"),
    )
    op.create_index("ix_billing_audit_entries_entity_id", "billing_audit_entries", ["entity_id"], unique=False)
    op.create_index("ix_billing_audit_entries_created_at", "billing_audit_entries", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_billing_audit_entries_created_at", table_name="billing_audit_entries")
    op.drop_index("ix_billing_audit_entries_entity_id", table_name="billing_audit_entries")
    op.drop_table("billing_audit_entries")

    op.drop_index("ix_billing_notifications_created_at", table_name="billing_notifications")
    op.drop_index("ix_billing_notifications_invoice_id", table_name="billing_notifications")
    op.drop_table("billing_notifications")

    op.drop_index("ix_billing_job_runs_job_name_started_at", table_name="billing_job_runs")
    op.drop_index("uq_billing_job_runs_running_job_name", table_name="billing_job_runs")
    op.drop_table("billing_job_runs")

    op.drop_index("uq_billing_payment_requests_pending_invoice", table_name="billing_payment_requests")
    op.drop_index("ix_billing_payment_requests_invoice_id", table_name="billing_payment_requests")
    op.drop_table("billing_payment_requests")

    op.drop_index("ix_billing_follow_up_logs_invoice_id", table_name="billing_follow_up_logs")
    op.drop_table("billing_follow_up_logs")

    op.drop_index("ix_billing_email_logs_invoice_id", table_name="billing_email_logs")
    op.drop_table("billing_email_logs")

    op.drop_index("ix_billing_invoices_status", table_name="billing_invoices")
    op.drop_table("billing_invoices")
