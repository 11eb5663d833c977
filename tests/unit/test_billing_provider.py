from urllib.parse import parse_qs

import httpx
import pytest

from support_agent.services.billing_provider import (
    STRIPE_API_BASE_URL,
    BillingProvider,
    BillingProviderError,
    NoRefundableChargeError,
    refund_idempotency_key,
)

CHARGES = {
    "data": [
        {"id": "ch_refunded", "amount": 49900, "status": "succeeded", "refunded": True},
        {"id": "ch_failed", "amount": 49900, "status": "failed", "refunded": False},
        {"id": "ch_ok", "amount": 49900, "status": "succeeded", "refunded": False},
    ]
}


def _provider(handler) -> BillingProvider:
    client = httpx.AsyncClient(base_url=STRIPE_API_BASE_URL, transport=httpx.MockTransport(handler))
    return BillingProvider("sk_test_123", client=client)


@pytest.mark.asyncio
async def test_find_customer_returns_first_match():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": [{"id": "cus_1", "email": "jane@example.com"}]})

    customer = await _provider(handler).find_customer("jane@example.com")

    assert customer["id"] == "cus_1"
    assert seen[0].url.path == "/v1/customers/search"
    assert seen[0].url.params["query"] == "email:'jane@example.com'"
    assert seen[0].headers["Authorization"] == "Bearer sk_test_123"


@pytest.mark.asyncio
async def test_find_customer_none_when_missing():
    provider = _provider(lambda request: httpx.Response(200, json={"data": []}))

    assert await provider.find_customer("who@example.com") is None


@pytest.mark.asyncio
async def test_billing_history_collects_charges_and_invoices():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/charges"):
            return httpx.Response(200, json=CHARGES)
        return httpx.Response(200, json={"data": [{"id": "in_1"}]})

    history = await _provider(handler).billing_history("cus_1")

    assert len(history["charges"]) == 3
    assert history["invoices"] == [{"id": "in_1"}]


@pytest.mark.asyncio
async def test_refund_targets_first_refundable_charge_with_idempotency_key():
    refunds = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=CHARGES)
        refunds.append(request)
        return httpx.Response(200, json={"id": "re_1", "amount": 20000, "status": "succeeded"})

    receipt = await _provider(handler).issue_refund(
        "cus_1", 20000, "Auto-approved", idempotency_key=refund_idempotency_key("msg-1")
    )

    assert receipt.refund_id == "re_1"
    assert receipt.charge_id == "ch_ok"
    assert receipt.amount == 20000
    request = refunds[0]
    assert request.headers["Idempotency-Key"] == "refund-msg-1"
    form = parse_qs(request.content.decode())
    assert form["charge"] == ["ch_ok"]
    assert form["amount"] == ["20000"]
    assert form["metadata[support_reference]"] == ["refund-msg-1"]


@pytest.mark.asyncio
async def test_refund_without_refundable_charge():
    provider = _provider(lambda request: httpx.Response(200, json={"data": CHARGES["data"][:2]}))

    with pytest.raises(NoRefundableChargeError) as exc_info:
        await provider.issue_refund("cus_1", 1000, "test")

    assert exc_info.value.error_code == "no_refundable_charge"


@pytest.mark.asyncio
async def test_stripe_error_maps_to_billing_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            402, json={"error": {"code": "charge_already_refunded", "message": "Already refunded"}}
        )

    with pytest.raises(BillingProviderError) as exc_info:
        await _provider(handler).list_subscriptions("cus_1")

    assert exc_info.value.status_code == 402
    assert exc_info.value.error_code == "charge_already_refunded"
