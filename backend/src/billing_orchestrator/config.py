from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item)


def _as_int_tuple(value: str | None, default: tuple[int, ...]) -> tuple[int, ...]:
    items = _as_csv_tuple(value)
    if not items:
        return default
    try:
        parsed = tuple(int(item) for item in items)
    except ValueError:
        return default
    if any(item < 0 for item in parsed):
        return default
    return parsed


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


DEFAULT_FOLLOW_UP_DELAY_DAYS = (3, 7, 14)


@dataclass(frozen=True)
class Settings:
    app_name: str = "Billing Orchestrator"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    billing_store_backend: str = "inmemory"
    database_url: str = ""
    default_currency: str = "PHP"
    company_name: str = "Billing Team"
    follow_up_delay_days: tuple[int, ...] = DEFAULT_FOLLOW_UP_DELAY_DAYS
    billing_job_name: str = "billing-cycle"
    billing_scheduler_enabled: bool = False
    billing_scheduler_interval_seconds: int = 3600
    job_run_stale_after_seconds: int = 6 * 60 * 60
    email_sender_type: str = "stub"
    email_enabled: bool = True
    email_from_address: str = "billing@example.com"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_timeout_seconds: int = 30
    payment_gateway_type: str = "stub"
    payment_gateway_api_base_url: str = "https://api.sandbox.hit-pay.com/v1"
    payment_gateway_api_key: str = ""
    payment_gateway_salt: str = ""
    payment_gateway_timeout_seconds: int = 30
    payment_gateway_redirect_url: str = ""
    payment_webhook_signature_mode: str = "log_only"
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("BILLING_APP_NAME", "Billing Orchestrator"),
        api_prefix=os.getenv("BILLING_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        billing_store_backend=os.getenv("BILLING_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        default_currency=os.getenv("BILLING_DEFAULT_CURRENCY", "PHP").strip().upper() or "PHP",
        company_name=os.getenv("BILLING_COMPANY_NAME", "Billing Team"),
        follow_up_delay_days=_as_int_tuple(os.getenv("FOLLOW_UP_DELAY_DAYS"), DEFAULT_FOLLOW_UP_DELAY_DAYS),
        billing_job_name=os.getenv("BILLING_JOB_NAME", "billing-cycle"),
        billing_scheduler_enabled=_as_bool(os.getenv("BILLING_SCHEDULER_ENABLED"), False),
        billing_scheduler_interval_seconds=_as_int(os.getenv("BILLING_SCHEDULER_INTERVAL_SECONDS"), 3600),
        job_run_stale_after_seconds=_as_int(os.getenv("JOB_RUN_STALE_AFTER_SECONDS"), 6 * 60 * 60),
        email_sender_type=_normalize_mode(
            os.getenv("EMAIL_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "smtp"},
        ),
        email_enabled=_as_bool(os.getenv("EMAIL_ENABLED"), True),
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "billing@example.com"),
        smtp_host=os.getenv("SMTP_HOST", ""),
        smtp_port=_as_int(os.getenv("SMTP_PORT"), 587),
        smtp_username=os.getenv("SMTP_USERNAME", ""),
        smtp_password=os.getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_as_bool(os.getenv("SMTP_USE_TLS"), True),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        payment_gateway_type=_normalize_mode(
            os.getenv("PAYMENT_GATEWAY_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        payment_gateway_api_base_url=os.getenv("PAYMENT_GATEWAY_API_BASE_URL", "https://api.sandbox.hit-pay.com/v1"),
        payment_gateway_api_key=os.getenv("PAYMENT_GATEWAY_API_KEY", ""),
        payment_gateway_salt=os.getenv("PAYMENT_GATEWAY_SALT", ""),
        payment_gateway_timeout_seconds=_as_int(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS"), 30),
        payment_gateway_redirect_url=os.getenv("PAYMENT_GATEWAY_REDIRECT_URL", ""),
        payment_webhook_signature_mode=_normalize_mode(
            os.getenv("PAYMENT_WEBHOOK_SIGNATURE_MODE"),
            default="log_only",
            allowed={"off", "log_only", "enforce"},
        ),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


@dataclass(frozen=True)
class BillingConfig:
    """Orchestration settings handed to the billing services at construction."""

    follow_up_delay_days: tuple[int, ...] = DEFAULT_FOLLOW_UP_DELAY_DAYS
    default_currency: str = "PHP"
    company_name: str = "Billing Team"
    job_run_stale_after_seconds: int = 6 * 60 * 60


def billing_config_from_settings(settings: Settings) -> BillingConfig:
    return BillingConfig(
        follow_up_delay_days=settings.follow_up_delay_days,
        default_currency=settings.default_currency,
        company_name=settings.company_name,
        job_run_stale_after_seconds=settings.job_run_stale_after_seconds,
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.payment_webhook_signature_mode == "enforce" and _is_placeholder(
        settings.payment_gateway_salt,
        defaults={"dev-gateway-salt"},
    ):
        issues.append("PAYMENT_GATEWAY_SALT is required when PAYMENT_WEBHOOK_SIGNATURE_MODE=enforce")
    if settings.payment_gateway_type == "http" and _is_placeholder(
        settings.payment_gateway_api_key,
        defaults={"dev-gateway-key"},
    ):
        issues.append("PAYMENT_GATEWAY_API_KEY is required when PAYMENT_GATEWAY_TYPE=http")
    if settings.email_sender_type == "smtp" and not settings.smtp_host.strip():
        issues.append("SMTP_HOST is required when EMAIL_SENDER_TYPE=smtp")
    if settings.billing_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when BILLING_STORE_BACKEND=postgres")
    return tuple(issues)
