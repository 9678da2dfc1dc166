"""Disbursement rail client (M-Pesa / bank transfer) with idempotent retry logic"""

import time
import httpx
from typing import Protocol
from carestint_payments.config import settings
from carestint_payments.domain.exceptions import RailAPIError, RailTimeoutError
from carestint_payments.domain.models import RailResult
from carestint_payments.infrastructure.observability.metrics import rail_latency_histogram, rail_failure_counter

# Rail statuses that settle an attempt one way or the other
FINAL_STATUSES = {"completed", "failed"}


class DisbursementRail(Protocol):
    """What the settlement runner needs from a disbursement rail"""

    def initiate_payout(
        self, method: str, destination: str, amount: int, currency: str, idempotency_token: str
    ) -> RailResult: ...

    def get_status(self, reference: str) -> RailResult: ...


class RailClient:
    """Client for the external transfer API"""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url or settings.rail_api_base
        self.secret_key = secret_key if secret_key is not None else settings.rail_secret_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = max_retries or settings.gateway_max_retries
        self.backoff_base = backoff_base if backoff_base is not None else settings.gateway_backoff_base
        self.transport = transport

    def initiate_payout(
        self, method: str, destination: str, amount: int, currency: str, idempotency_token: str
    ) -> RailResult:
        """
        Request a transfer to the professional.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base, ...
        - Retries on 5xx and network failures, always with the same
          idempotency token so the rail pays at most once per attempt
        - 4xx means the rail rejected the transfer: returned as "failed"

        Raises:
            RailTimeoutError: outcome unknown after all retries
        """
        payload = {
            "method": method,
            "destination": destination,
            "amount": amount,
            "currency": currency,
            "reference": idempotency_token,
            "narration": "CareStint shift payout",
        }
        attempt = 0
        with httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.secret_key}", "Idempotency-Key": idempotency_token},
            transport=self.transport,
        ) as client:
            while True:
                try:
                    with rail_latency_histogram.time():
                        response = client.post("/transfers", json=payload)
                    if 400 <= response.status_code < 500:
                        rail_failure_counter.inc()
                        body = response.json() if response.content else {}
                        return RailResult(
                            status="failed",
                            rail_reference=body.get("id"),
                            message=body.get("message", f"rejected with status {response.status_code}"),
                        )
                    response.raise_for_status()
                    return self._parse(response.json())

                except (httpx.HTTPStatusError, httpx.RequestError) as e:
                    attempt += 1
                    rail_failure_counter.inc()

                    if attempt >= self.max_retries:
                        # Money may be in transit; the caller must reconcile, not assume
                        raise RailTimeoutError(
                            f"Disbursement rail gave no definitive answer after {attempt} attempts: {e}"
                        ) from e

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    time.sleep(backoff)

    def get_status(self, reference: str) -> RailResult:
        """Look up a transfer by rail reference, or by the idempotency token sent with it"""
        with httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=self.transport,
        ) as client:
            try:
                with rail_latency_histogram.time():
                    response = client.get("/transfers", params={"reference": reference})
                if response.status_code == 404:
                    return RailResult(status="not_found", message="rail has no record of this transfer")
                response.raise_for_status()
                return self._parse(response.json())
            except httpx.TimeoutException as e:
                rail_failure_counter.inc()
                raise RailTimeoutError(f"Disbursement rail timeout after {self.timeout}s") from e
            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                rail_failure_counter.inc()
                raise RailAPIError(f"Disbursement rail error: {e}") from e

    @staticmethod
    def _parse(data: dict) -> RailResult:
        try:
            return RailResult(
                status=data["status"],
                rail_reference=data.get("id"),
                message=data.get("message", ""),
            )
        except (KeyError, TypeError) as e:
            raise RailAPIError(f"Invalid response from disbursement rail: {e}") from e
