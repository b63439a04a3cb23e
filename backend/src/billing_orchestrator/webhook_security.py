from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

SIGNATURE_HEADERS = ("Hitpay-Signature", "X-Signature")


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def _normalize_signature(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if normalized.startswith("sha256="):
        return normalized.removeprefix("sha256=").strip().lower()
    return normalized.lower()


def compute_callback_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_payment_callback_signature(
    *,
    settings: Settings,
    body: bytes,
    headers: Mapping[str, str],
) -> WebhookSignatureVerification:
    if settings.payment_webhook_signature_mode == "off":
        return WebhookSignatureVerification(verified=True)

    secret = settings.payment_gateway_salt.strip()
    if not secret:
        return WebhookSignatureVerification(verified=False, reason="webhook_secret_missing")

    signature_text = next((headers.get(name) for name in SIGNATURE_HEADERS if headers.get(name)), None)
    normalized_signature = _normalize_signature(signature_text)
    if normalized_signature is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")

    expected_signature = compute_callback_signature(secret, body)
    if not hmac.compare_digest(normalized_signature, expected_signature):
        return WebhookSignatureVerification(verified=False, reason="signature_mismatch")

    return WebhookSignatureVerification(verified=True)
