"""Payment gateway HTTP client for employer charges, confirmations and refunds"""

import httpx
from typing import Protocol
from carestint_payments.domain.models import GatewayResult, PaymentDetails
from carestint_payments.domain.exceptions import GatewayAPIError, GatewayDeclinedError, GatewayTimeoutError
from carestint_payments.config import settings
from carestint_payments.infrastructure.observability.metrics import gateway_latency_histogram, gateway_failure_counter

NOT_FOUND = "not_found"


class PaymentGateway(Protocol):
    """What the engine needs from a payment gateway"""

    def charge_or_confirm(
        self, tx_ref: str, amount: int, currency: str, details: PaymentDetails
    ) -> GatewayResult: ...

    def check_status(self, gateway_reference: str) -> GatewayResult: ...

    def refund(self, gateway_reference: str, amount: int) -> GatewayResult: ...


class GatewayClient:
    """Client for the external card / M-Pesa payment gateway"""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url or settings.gateway_api_base
        self.secret_key = secret_key if secret_key is not None else settings.gateway_secret_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=self.transport,
        )

    def _request(self, method: str, path: str, allow_not_found: bool = False, **kwargs) -> dict:
        """
        Send one request and map transport problems onto domain errors.

        With allow_not_found a 404 comes back as an empty dict.

        Raises:
            GatewayTimeoutError: no answer within the timeout
            GatewayDeclinedError: gateway refused the operation (4xx)
            GatewayAPIError: 5xx or malformed body
        """
        with self._client() as client:
            try:
                with gateway_latency_histogram.time():
                    response = client.request(method, path, **kwargs)
                if response.status_code == 404 and allow_not_found:
                    return {}
                if 400 <= response.status_code < 500:
                    body = response.json() if response.content else {}
                    gateway_failure_counter.inc()
                    raise GatewayDeclinedError(
                        body.get("message", f"declined with status {response.status_code}"),
                        body.get("reference"),
                    )
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                gateway_failure_counter.inc()
                raise GatewayTimeoutError(f"Payment gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                gateway_failure_counter.inc()
                raise GatewayAPIError(f"Payment gateway error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                gateway_failure_counter.inc()
                raise GatewayAPIError(f"Payment gateway unreachable: {e}") from e
            except ValueError as e:
                raise GatewayAPIError(f"Invalid response from payment gateway: {e}") from e

    @staticmethod
    def _parse(data: dict) -> GatewayResult:
        try:
            result = GatewayResult(
                status=data["status"],
                gateway_reference=data["reference"],
                message=data.get("message", ""),
            )
        except (KeyError, TypeError) as e:
            raise GatewayAPIError(f"Invalid response from payment gateway: {e}") from e
        if result.status == "failed":
            raise GatewayDeclinedError(result.message or "payment failed", result.gateway_reference)
        return result

    def charge_or_confirm(self, tx_ref: str, amount: int, currency: str, details: PaymentDetails) -> GatewayResult:
        """Submit a charge; tx_ref doubles as the gateway idempotency key"""
        data = self._request(
            "POST",
            "/charges",
            json={
                "tx_ref": tx_ref,
                "amount": amount,
                "currency": currency,
                "payment_method": details.payment_method,
                "phone_number": details.phone_number,
                "card_token": details.card_token,
                "email": details.email,
            },
            headers={"Idempotency-Key": tx_ref},
        )
        return self._parse(data)

    def check_status(self, gateway_reference: str) -> GatewayResult:
        """Look a charge up by gateway reference or tx_ref; unknown charges are not_found"""
        data = self._request(
            "GET", "/transactions/verify", allow_not_found=True, params={"reference": gateway_reference}
        )
        if not data:
            return GatewayResult(status=NOT_FOUND, gateway_reference=gateway_reference)
        return self._parse(data)

    def refund(self, gateway_reference: str, amount: int) -> GatewayResult:
        data = self._request("POST", f"/transactions/{gateway_reference}/refund", json={"amount": amount})
        return self._parse(data)
