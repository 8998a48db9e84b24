"""
Payment gateway port and the Paystack adapter.

The recovery code depends only on `PaymentGateway`: charge a stored payment
method under an idempotency reference, and look up what happened to a
reference after a crash.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx
import structlog

from payment_recovery.shared.core.config import get_settings
from payment_recovery.shared.core.exceptions import ConfigurationError, GatewayError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None


class PaymentGateway(Protocol):
    async def charge(
        self,
        method: Optional[str],
        amount: Decimal,
        currency: str,
        reference: str,
        customer_email: Optional[str] = None,
    ) -> ChargeResult:
        ...

    async def verify(self, reference: str) -> Optional[ChargeResult]:
        """Outcome of a previous charge, or None if the gateway never saw `reference`."""
        ...


# Paystack transaction states that settle a charge
PAYSTACK_FAILED_STATES = {"failed", "abandoned", "reversed"}


class PaystackGateway:
    """Charges stored Paystack authorizations (recurring billing)."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        secret_key = secret_key or settings.PAYSTACK_SECRET_KEY
        if not secret_key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY not configured")

        self.base_url = (base_url or settings.PAYSTACK_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self.headers = {
            "Authorization": f"Bearer {secret_key}",
            "Content-Type": "application/json"
        }
        self._transport = transport

    async def _request(self, method: str, endpoint: str, data: Optional[Dict] = None) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                return await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    json=data,
                )
            except httpx.TimeoutException as e:
                raise GatewayError(f"Paystack request timed out: {endpoint}", code="gateway_timeout") from e
            except httpx.HTTPError as e:
                logger.error("paystack_api_error", endpoint=endpoint, error=str(e))
                raise GatewayError(f"Paystack request failed: {endpoint}") from e

    @staticmethod
    def _to_minor_units(amount: Decimal) -> int:
        return int((Decimal(amount) * 100).quantize(Decimal("1")))

    @staticmethod
    def _parse_transaction(data: Dict[str, Any]) -> Optional[ChargeResult]:
        status = (data.get("status") or "").lower()
        transaction_id = str(data["id"]) if data.get("id") is not None else None
        if status == "success":
            return ChargeResult(success=True, transaction_id=transaction_id)
        if status in PAYSTACK_FAILED_STATES:
            return ChargeResult(
                success=False,
                transaction_id=transaction_id,
                failure_reason=data.get("gateway_response") or status,
                error_code=(data.get("gateway_response") or "").upper().replace(" ", "_") or None,
            )
        # pending / ongoing / send_otp: not settled
        return None

    async def charge(
        self,
        method: Optional[str],
        amount: Decimal,
        currency: str,
        reference: str,
        customer_email: Optional[str] = None,
    ) -> ChargeResult:
        if not method:
            return ChargeResult(success=False, failure_reason="No stored payment method", error_code="INVALID_CARD")

        payload = {
            "authorization_code": method,
            "email": customer_email,
            "amount": self._to_minor_units(amount),
            "currency": currency,
            "reference": reference,
            "metadata": {"source": "payment_recovery"},
        }
        response = await self._request("POST", "transaction/charge_authorization", payload)

        if response.status_code >= 500:
            raise GatewayError("Paystack unavailable", details={"status_code": response.status_code})

        body = response.json()
        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or "Charge rejected"
            logger.warning("paystack_charge_rejected", reference=reference, status_code=response.status_code)
            return ChargeResult(success=False, failure_reason=message, error_code="GATEWAY_ERROR")

        result = self._parse_transaction(body.get("data") or {})
        if result is None:
            # Not settled synchronously; the in-doubt path will verify it later
            raise GatewayError("Charge not settled", code="gateway_pending", details={"reference": reference})

        logger.info("paystack_charge_completed", reference=reference, success=result.success)
        return result

    async def verify(self, reference: str) -> Optional[ChargeResult]:
        response = await self._request("GET", f"transaction/verify/{reference}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise GatewayError("Paystack verify failed", details={"status_code": response.status_code})

        body = response.json()
        if not body.get("status"):
            return None
        return self._parse_transaction(body.get("data") or {})
