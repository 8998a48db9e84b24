"""
Tests for the Paystack Gateway adapter

Covers:
- charge_authorization request shape (minor units, reference, auth header)
- Settled success and failure outcomes
- 4xx rejections vs 5xx / network errors
- Pending charges and timeouts surface as in-doubt gateway errors
- verify() for unknown and settled references
"""

import json
from decimal import Decimal

import httpx
import pytest

from payment_recovery.modules.recovery.domain.gateway import ChargeResult, PaystackGateway
from payment_recovery.shared.core.config import get_settings
from payment_recovery.shared.core.exceptions import ConfigurationError, GatewayError


def make_gateway(handler) -> PaystackGateway:
    return PaystackGateway(
        secret_key="sk_test_xxx",
        base_url="https://paystack.test",
        transport=httpx.MockTransport(handler),
    )


def transaction(status: str, **extra) -> dict:
    return {"status": True, "message": "Charge attempted", "data": {"id": 4099260516, "status": status, **extra}}


async def charge(gateway: PaystackGateway, method="AUTH_test123") -> ChargeResult:
    return await gateway.charge(method, Decimal("49.00"), "NGN", "retry-ref-1", customer_email="owner@example.com")


class TestCharge:
    @pytest.mark.asyncio
    async def test_success(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json=transaction("success"))

        result = await charge(make_gateway(handler))

        assert result == ChargeResult(success=True, transaction_id="4099260516")
        request = requests[0]
        assert request.url == "https://paystack.test/transaction/charge_authorization"
        assert request.headers["Authorization"] == "Bearer sk_test_xxx"
        body = json.loads(request.content)
        assert body["amount"] == 4900
        assert body["reference"] == "retry-ref-1"
        assert body["authorization_code"] == "AUTH_test123"
        assert body["email"] == "owner@example.com"

    @pytest.mark.asyncio
    async def test_declined(self):
        gateway = make_gateway(
            lambda request: httpx.Response(200, json=transaction("failed", gateway_response="Insufficient Funds"))
        )

        result = await charge(gateway)

        assert result.success is False
        assert result.failure_reason == "Insufficient Funds"
        assert result.error_code == "INSUFFICIENT_FUNDS"

    @pytest.mark.asyncio
    async def test_rejected_request(self):
        gateway = make_gateway(
            lambda request: httpx.Response(400, json={"status": False, "message": "Invalid authorization code"})
        )

        result = await charge(gateway)

        assert result.success is False
        assert result.failure_reason == "Invalid authorization code"
        assert result.error_code == "GATEWAY_ERROR"

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        gateway = make_gateway(lambda request: httpx.Response(503, text="upstream down"))

        with pytest.raises(GatewayError) as exc:
            await charge(gateway)
        assert exc.value.code == "gateway_error"
        assert exc.value.retryable is True

    @pytest.mark.asyncio
    async def test_pending_is_in_doubt(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json=transaction("pending")))

        with pytest.raises(GatewayError) as exc:
            await charge(gateway)
        assert exc.value.code == "gateway_pending"

    @pytest.mark.asyncio
    async def test_timeout_is_in_doubt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayError) as exc:
            await charge(make_gateway(handler))
        assert exc.value.code == "gateway_timeout"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GatewayError) as exc:
            await charge(make_gateway(handler))
        assert exc.value.code == "gateway_error"

    @pytest.mark.asyncio
    async def test_missing_payment_method_never_calls_paystack(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("unexpected request")

        result = await charge(make_gateway(handler), method=None)

        assert result == ChargeResult(success=False, failure_reason="No stored payment method", error_code="INVALID_CARD")


class TestVerify:
    @pytest.mark.asyncio
    async def test_unknown_reference(self):
        gateway = make_gateway(lambda request: httpx.Response(404, json={"status": False, "message": "Not found"}))
        assert await gateway.verify("retry-ref-1") is None

    @pytest.mark.asyncio
    async def test_settled_reference(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json=transaction("success"))

        result = await make_gateway(handler).verify("retry-ref-1")

        assert result.success is True
        assert seen == ["/transaction/verify/retry-ref-1"]

    @pytest.mark.asyncio
    async def test_still_pending_reference(self):
        gateway = make_gateway(lambda request: httpx.Response(200, json=transaction("ongoing")))
        assert await gateway.verify("retry-ref-1") is None

    @pytest.mark.asyncio
    async def test_verify_server_error(self):
        gateway = make_gateway(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(GatewayError):
            await gateway.verify("retry-ref-1")


def test_requires_secret_key(monkeypatch):
    monkeypatch.setattr(get_settings(), "PAYSTACK_SECRET_KEY", None)
    with pytest.raises(ConfigurationError):
        PaystackGateway()


@pytest.mark.parametrize("amount,expected", [(Decimal("49.00"), 4900), (Decimal("0.5"), 50), (Decimal("1999.99"), 199999)])
def test_minor_units(amount, expected):
    assert PaystackGateway._to_minor_units(amount) == expected
