from __future__ import annotations

import json
import secrets
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from .errors import GatewayError


@dataclass(frozen=True)
class CheckoutSession:
    external_request_id: str
    checkout_url: str


class PaymentGatewayClient(Protocol):
    def create_checkout(self, amount: Decimal, currency: str, invoice_ref: str) -> CheckoutSession: ...


class StubPaymentGateway:
    def __init__(self, *, base_url: str = "https://checkout.stub.local") -> None:
        self._base_url = base_url.rstrip("/")
        self.created: list[CheckoutSession] = []

    def create_checkout(self, amount: Decimal, currency: str, invoice_ref: str) -> CheckoutSession:
        if "fail" in invoice_ref.lower():
            raise GatewayError("Stub gateway forced failure for invoice reference", error_code="stub_gateway_failed")
        external_request_id = f"stubpay-{secrets.token_hex(6)}"
        session = CheckoutSession(
            external_request_id=external_request_id,
            checkout_url=f"{self._base_url}/pay/{external_request_id}",
        )
        self.created.append(session)
        return session


class HttpPaymentGateway:
    """HitPay-style payment-request API client."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        redirect_url: str = "",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._redirect_url = redirect_url.strip()
        self._timeout_seconds = timeout_seconds

    def create_checkout(self, amount: Decimal, currency: str, invoice_ref: str) -> CheckoutSession:
        form = {
            "amount": f"{amount:.2f}",
            "currency": currency,
            "reference_number": invoice_ref,
            "purpose": f"Payment for {invoice_ref}",
        }
        if self._redirect_url:
            form["redirect_url"] = self._redirect_url

        response_data = self._post("/payment-requests", form)
        external_request_id = response_data.get("id")
        checkout_url = response_data.get("url")
        if not external_request_id or not checkout_url:
            raise GatewayError("Gateway response is missing id or url", error_code="invalid_response")
        return CheckoutSession(external_request_id=str(external_request_id), checkout_url=str(checkout_url))

    def _post(self, path: str, form: dict[str, str]) -> dict[str, object]:
        request = urllib.request.Request(
            f"{self._base_url}{path}",
            data=urllib.parse.urlencode(form).encode("utf-8"),
            headers={
                "X-BUSINESS-API-KEY": self._api_key,
                "X-Requested-With": "XMLHttpRequest",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise GatewayError(f"HTTP {exc.code}: {exc.reason}", error_code=f"http_{exc.code}") from exc
        except urllib.error.URLError as exc:
            raise GatewayError(f"Connection error: {exc.reason}", error_code="connection_error") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise GatewayError(f"Request timed out: {exc}", error_code="timeout") from exc
        except json.JSONDecodeError as exc:
            raise GatewayError("Gateway returned a non-JSON body", error_code="invalid_response") from exc
