"""Unit tests for the gateway and rail HTTP clients"""

import httpx
import pytest
from carestint_payments.domain.exceptions import (
    GatewayAPIError,
    GatewayDeclinedError,
    GatewayTimeoutError,
    RailTimeoutError,
)
from carestint_payments.domain.models import PaymentDetails
from carestint_payments.infrastructure.clients.gateway import GatewayClient
from carestint_payments.infrastructure.clients.rail import RailClient

DETAILS = PaymentDetails(payment_method="mpesa", phone_number="254711111111")


def gateway_with(handler) -> GatewayClient:
    return GatewayClient(base_url="http://gateway.test", secret_key="sk_test", transport=httpx.MockTransport(handler))


def rail_with(handler, max_retries: int = 3) -> RailClient:
    return RailClient(
        base_url="http://rail.test",
        secret_key="sk_test",
        max_retries=max_retries,
        backoff_base=0.0,
        transport=httpx.MockTransport(handler),
    )


def test_charge_sends_tx_ref_as_idempotency_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers["Idempotency-Key"]
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"status": "pending", "reference": "flw_1"})

    result = gateway_with(handler).charge_or_confirm("pi_1", 5750, "KES", DETAILS)

    assert result.status == "pending"
    assert result.gateway_reference == "flw_1"
    assert seen == {"key": "pi_1", "auth": "Bearer sk_test"}


def test_charge_decline_raises_declined():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"message": "insufficient funds", "reference": "flw_2"})

    with pytest.raises(GatewayDeclinedError) as exc_info:
        gateway_with(handler).charge_or_confirm("pi_1", 5750, "KES", DETAILS)

    assert exc_info.value.reason == "insufficient funds"
    assert exc_info.value.gateway_reference == "flw_2"


def test_failed_status_body_raises_declined():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "failed", "reference": "flw_3", "message": "cancelled by user"})

    with pytest.raises(GatewayDeclinedError):
        gateway_with(handler).check_status("flw_3")


def test_status_of_unknown_charge_is_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["reference"] == "pi_1"
        return httpx.Response(404, json={"message": "no transaction"})

    result = gateway_with(handler).check_status("pi_1")

    assert result.status == "not_found"
    assert result.gateway_reference == "pi_1"


def test_charge_404_is_still_a_decline():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "unknown merchant"})

    with pytest.raises(GatewayDeclinedError):
        gateway_with(handler).charge_or_confirm("pi_1", 5750, "KES", DETAILS)


def test_gateway_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeoutError):
        gateway_with(handler).check_status("flw_1")


def test_gateway_server_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    with pytest.raises(GatewayAPIError):
        gateway_with(handler).refund("flw_1", 100)


def test_rail_reuses_token_across_network_retries():
    tokens = []

    def handler(request: httpx.Request) -> httpx.Response:
        tokens.append(request.headers["Idempotency-Key"])
        if len(tokens) < 3:
            return httpx.Response(502)
        return httpx.Response(200, json={"status": "completed", "id": "tr_9"})

    result = rail_with(handler).initiate_payout("mpesa", "254700000001", 4700, "KES", "pat_abc")

    assert result.status == "completed"
    assert result.rail_reference == "tr_9"
    assert tokens == ["pat_abc", "pat_abc", "pat_abc"]


def test_rail_rejection_is_a_failed_result():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "invalid destination"})

    result = rail_with(handler).initiate_payout("bank", "000", 4700, "KES", "pat_abc")

    assert result.status == "failed"
    assert result.message == "invalid destination"


def test_rail_gives_up_without_a_definitive_answer():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(RailTimeoutError):
        rail_with(handler, max_retries=2).initiate_payout("mpesa", "254700000001", 4700, "KES", "pat_abc")

    assert len(calls) == 2


def test_rail_status_lookup_not_found():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["reference"] == "pat_abc"
        return httpx.Response(404)

    result = rail_with(handler).get_status("pat_abc")
    assert result.status == "not_found"
