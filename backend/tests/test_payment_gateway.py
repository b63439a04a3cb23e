from __future__ import annotations

import io
import json
import socket
import urllib.error
import urllib.parse
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from billing_orchestrator.errors import GatewayError
from billing_orchestrator.payment_gateway import HttpPaymentGateway, StubPaymentGateway


def _make_gateway(*, redirect_url: str = "") -> HttpPaymentGateway:
    return HttpPaymentGateway(
        base_url="https://api.gateway.test/v1/",
        api_key="test-gateway-key",
        redirect_url=redirect_url,
        timeout_seconds=15,
    )


def _mock_response(body: dict[str, str]) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = 201
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("billing_orchestrator.payment_gateway.urllib.request.urlopen")
def test_http_gateway_creates_checkout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"id": "pr-8842", "url": "https://pay.gateway.test/pr-8842"})
    gateway = _make_gateway(redirect_url="https://billing.example.com/paid")

    session = gateway.create_checkout(Decimal("1500.5"), "PHP", "BN-1001")

    assert session.external_request_id == "pr-8842"
    assert session.checkout_url == "https://pay.gateway.test/pr-8842"
    request = mock_urlopen.call_args.args[0]
    assert request.full_url == "https://api.gateway.test/v1/payment-requests"
    assert request.get_header("X-business-api-key") == "test-gateway-key"
    form = urllib.parse.parse_qs(request.data.decode("utf-8"))
    assert form["amount"] == ["1500.50"]
    assert form["currency"] == ["PHP"]
    assert form["reference_number"] == ["BN-1001"]
    assert form["redirect_url"] == ["https://billing.example.com/paid"]
    assert mock_urlopen.call_args.kwargs["timeout"] == 15


@patch("billing_orchestrator.payment_gateway.urllib.request.urlopen")
def test_http_gateway_http_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://api.gateway.test/v1/payment-requests",
        code=422,
        msg="Unprocessable Entity",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(b""),
    )

    with pytest.raises(GatewayError) as exc_info:
        _make_gateway().create_checkout(Decimal("10"), "PHP", "BN-1")

    assert exc_info.value.error_code == "http_422"


@patch("billing_orchestrator.payment_gateway.urllib.request.urlopen")
def test_http_gateway_connection_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    with pytest.raises(GatewayError) as exc_info:
        _make_gateway().create_checkout(Decimal("10"), "PHP", "BN-1")

    assert exc_info.value.error_code == "connection_error"


@patch("billing_orchestrator.payment_gateway.urllib.request.urlopen")
def test_http_gateway_timeout(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    with pytest.raises(GatewayError) as exc_info:
        _make_gateway().create_checkout(Decimal("10"), "PHP", "BN-1")

    assert exc_info.value.error_code == "timeout"


@patch("billing_orchestrator.payment_gateway.urllib.request.urlopen")
def test_http_gateway_response_without_id(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"url": "https://pay.gateway.test/x"})

    with pytest.raises(GatewayError) as exc_info:
        _make_gateway().create_checkout(Decimal("10"), "PHP", "BN-1")

    assert exc_info.value.error_code == "invalid_response"


def test_http_gateway_requires_api_key() -> None:
    with pytest.raises(ValueError, match="api_key"):
        HttpPaymentGateway(base_url="https://api.gateway.test", api_key="  ")


def test_stub_gateway_issues_unique_sessions() -> None:
    gateway = StubPaymentGateway()

    first = gateway.create_checkout(Decimal("10"), "PHP", "BN-1")
    second = gateway.create_checkout(Decimal("10"), "PHP", "BN-1")

    assert first.external_request_id != second.external_request_id
    assert first.checkout_url.endswith(first.external_request_id)
    assert gateway.created == [first, second]
