from __future__ import annotations

import os

import pytest

from billing_orchestrator.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def _base_runtime_secret_env() -> dict[str, str | None]:
    return {
        "RUNTIME_SECRET_GUARD_MODE": "enforce",
        "EMAIL_SENDER_TYPE": "stub",
        "PAYMENT_GATEWAY_TYPE": "stub",
        "PAYMENT_WEBHOOK_SIGNATURE_MODE": "off",
        "BILLING_STORE_BACKEND": "inmemory",
        "BILLING_APP_NAME": None,
    }


def test_create_app_starts_with_stub_integrations() -> None:
    previous = _set_env(_base_runtime_secret_env())
    try:
        app = create_app()
        assert app.title == "Billing Orchestrator"
        paths = {getattr(route, "path", None) for route in app.routes}
        assert "/api/v1/billing/payments/callback" in paths
        assert "/api/v1/billing/jobs/{job_name}/trigger" in paths
    finally:
        _restore_env(previous)


def test_create_app_blocks_http_gateway_without_api_key() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "PAYMENT_GATEWAY_TYPE": "http",
            "PAYMENT_GATEWAY_API_KEY": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        message = str(exc_info.value)
        assert "runtime secret guard blocked startup" in message
        assert "PAYMENT_GATEWAY_API_KEY is required" in message
        assert "switch unused integrations back to the stub senders" in message
    finally:
        _restore_env(previous)


def test_create_app_blocks_enforced_signatures_without_salt() -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "PAYMENT_WEBHOOK_SIGNATURE_MODE": "enforce",
            "PAYMENT_GATEWAY_SALT": None,
        }
    )
    try:
        with pytest.raises(RuntimeError) as exc_info:
            create_app()
        assert "PAYMENT_GATEWAY_SALT is required" in str(exc_info.value)
    finally:
        _restore_env(previous)


def test_warn_mode_logs_instead_of_blocking(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            **_base_runtime_secret_env(),
            "RUNTIME_SECRET_GUARD_MODE": "warn",
            "EMAIL_SENDER_TYPE": "smtp",
            "SMTP_HOST": None,
        }
    )
    try:
        with caplog.at_level("WARNING", logger="billing_orchestrator.main"):
            app = create_app()
        assert app.title == "Billing Orchestrator"
        assert any("SMTP_HOST is required" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
