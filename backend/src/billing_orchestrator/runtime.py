from __future__ import annotations

from dataclasses import dataclass

from .config import BillingConfig, Settings, billing_config_from_settings
from .delivery import EmailDelivery
from .email_sender import EmailSender, SmtpEmailSender, StubEmailSender
from .escalation import FollowUpEscalationPolicy
from .jobs import JobRunner
from .notifications import AuditTrail, NotificationSink, StoreNotificationSink
from .payment_gateway import HttpPaymentGateway, PaymentGatewayClient, StubPaymentGateway
from .reconciliation import PaymentReconciler
from .scheduler import BillingScheduler
from .state_machine import InvoiceStateMachine
from .store import BillingStore
from .store_backends import create_billing_store
from .templates import StaticTemplateResolver, TemplateResolver


def create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "smtp":
        return SmtpEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            from_address=settings.email_from_address,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender(enabled=settings.email_enabled)


def create_payment_gateway(settings: Settings) -> PaymentGatewayClient:
    if settings.payment_gateway_type == "http":
        return HttpPaymentGateway(
            base_url=settings.payment_gateway_api_base_url,
            api_key=settings.payment_gateway_api_key,
            redirect_url=settings.payment_gateway_redirect_url,
            timeout_seconds=settings.payment_gateway_timeout_seconds,
        )
    return StubPaymentGateway()


@dataclass
class BillingRuntime:
    settings: Settings
    config: BillingConfig
    store: BillingStore
    email_sender: EmailSender
    payment_gateway: PaymentGatewayClient
    notifications: NotificationSink
    state_machine: InvoiceStateMachine
    escalation: FollowUpEscalationPolicy
    reconciler: PaymentReconciler
    job_runner: JobRunner
    scheduler: BillingScheduler | None = None

    def start_scheduler(self) -> BillingScheduler:
        if self.scheduler is None:
            self.scheduler = BillingScheduler(
                runner=self.job_runner,
                job_name=self.settings.billing_job_name,
                interval_seconds=self.settings.billing_scheduler_interval_seconds,
            )
        self.scheduler.start()
        return self.scheduler

    def stop_scheduler(self) -> None:
        if self.scheduler is not None:
            self.scheduler.stop()


def build_runtime(
    settings: Settings,
    *,
    store: BillingStore | None = None,
    email_sender: EmailSender | None = None,
    payment_gateway: PaymentGatewayClient | None = None,
    notifications: NotificationSink | None = None,
    templates: TemplateResolver | None = None,
) -> BillingRuntime:
    config = billing_config_from_settings(settings)
    billing_store = store or create_billing_store(
        backend=settings.billing_store_backend,
        database_url=settings.database_url,
    )
    sender = email_sender or create_email_sender(settings)
    gateway = payment_gateway or create_payment_gateway(settings)
    sink = notifications or StoreNotificationSink(billing_store)
    audit = AuditTrail(billing_store)
    delivery = EmailDelivery(store=billing_store, sender=sender)

    state_machine = InvoiceStateMachine(
        store=billing_store,
        delivery=delivery,
        gateway=gateway,
        notifications=sink,
        audit=audit,
        config=config,
    )
    escalation = FollowUpEscalationPolicy(
        store=billing_store,
        delivery=delivery,
        templates=templates or StaticTemplateResolver(),
        notifications=sink,
        audit=audit,
        config=config,
    )
    reconciler = PaymentReconciler(
        store=billing_store,
        state_machine=state_machine,
        notifications=sink,
        audit=audit,
    )
    job_runner = JobRunner(
        store=billing_store,
        state_machine=state_machine,
        escalation=escalation,
        config=config,
        job_name=settings.billing_job_name,
    )
    return BillingRuntime(
        settings=settings,
        config=config,
        store=billing_store,
        email_sender=sender,
        payment_gateway=gateway,
        notifications=sink,
        state_machine=state_machine,
        escalation=escalation,
        reconciler=reconciler,
        job_runner=job_runner,
    )
