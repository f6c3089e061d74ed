import base64
import json
import logging

import httpx
import pytest

from notipay.core.analytics import StatusDriftMetrics
from notipay.core.errors import UpstreamError
from notipay.models.payment_model import EXPIRED, PENDING, SUCCEEDED
from notipay.services.gateway import (
    GatewayClient,
    GatewayConfig,
    normalize_disbursement_status,
    normalize_funding_status,
    pick_checkout_url,
)

CHARGE_RESPONSE = {
    "id": "ewc_123",
    "status": "PENDING",
    "actions": {
        "desktop_web_checkout_url": None,
        "mobile_web_checkout_url": "https://checkout.gateway.test/web/ewc_123",
        "mobile_deeplink_checkout_url": "https://checkout.gateway.test/deeplink/ewc_123",
    },
}


def make_client(handler, metrics=None):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = GatewayClient(
        GatewayConfig(base_url="https://gateway.test", secret_key="sk_test", backoff_seconds=0.5),
        metrics=metrics or StatusDriftMetrics(),
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
    )
    return client, sleeps


async def create_charge(client, **overrides):
    kwargs = dict(
        reference_id="ref-1",
        mobile_number="+639171234567",
        amount=500.0,
        description="October rent",
        success_url="https://notipay.test/success?reference_id=ref-1",
        failure_url="https://notipay.test/failure?reference_id=ref-1",
    )
    kwargs.update(overrides)
    return await client.create_charge(**kwargs)


async def create_disbursement(client):
    return await client.create_disbursement(
        reference_id="ref-1-disb",
        account_number="09181234567",
        account_holder_name="Maria Santos",
        amount=500.0,
        description="Rent share",
    )


# ----------------------------
# Status normalization
# ----------------------------
@pytest.mark.parametrize(
    "raw, expected",
    [("PENDING", PENDING), ("succeeded", SUCCEEDED), ("PAID", SUCCEEDED), ("SETTLED", SUCCEEDED), ("EXPIRED", EXPIRED)],
)
def test_normalize_funding_status_known(raw, expected):
    status = normalize_funding_status(raw)
    assert status.value == expected
    assert not status.coerced


def test_normalize_funding_status_unknown_is_pending_and_counted():
    metrics = StatusDriftMetrics()
    status = normalize_funding_status("VOIDED", metrics)
    assert status.value == PENDING
    assert status.coerced
    assert metrics.count("funding", "VOIDED") == 1


def test_normalize_disbursement_status_unknown_is_succeeded_and_counted():
    metrics = StatusDriftMetrics()
    assert normalize_disbursement_status("COMPLETED", metrics).value == SUCCEEDED
    status = normalize_disbursement_status("FAILED", metrics)
    assert status.value == SUCCEEDED
    assert status.coerced
    assert metrics.snapshot() == {("disbursement", "FAILED"): 1}


def test_pick_checkout_url_fallback_order():
    assert pick_checkout_url(CHARGE_RESPONSE["actions"]).endswith("/deeplink/ewc_123")
    assert pick_checkout_url({"mobile_web_checkout_url": "https://web"}) == "https://web"
    assert pick_checkout_url({"desktop_web_checkout_url": "https://desktop"}) == "https://desktop"
    assert pick_checkout_url(None) is None


# ----------------------------
# Charges
# ----------------------------
async def test_create_charge_sends_expected_request():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json=CHARGE_RESPONSE)

    client, sleeps = make_client(handler)
    result = await create_charge(client, metadata={"title": "Rent share"})

    assert result.gateway_id == "ewc_123"
    assert result.status.value == PENDING
    assert result.product == "charge"
    assert result.checkout_url == "https://checkout.gateway.test/deeplink/ewc_123"
    assert sleeps == []

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/ewallets/charges"
    expected_auth = "Basic " + base64.b64encode(b"sk_test:").decode()
    assert request.headers["authorization"] == expected_auth
    body = json.loads(request.content)
    assert body["reference_id"] == "ref-1"
    assert body["currency"] == "PHP"
    assert body["channel_code"] == "PH_GCASH"
    assert body["channel_properties"]["mobile_number"] == "+639171234567"
    assert body["metadata"] == {"description": "October rent", "title": "Rent share"}


async def test_create_charge_without_checkout_url_fails():
    def handler(request):
        return httpx.Response(201, json={"id": "ewc_123", "status": "PENDING", "actions": {}})

    client, _ = make_client(handler)
    with pytest.raises(UpstreamError, match="no valid checkout URL"):
        await create_charge(client)


async def test_retries_until_success_with_linear_backoff():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(500, text="upstream hiccup")
        return httpx.Response(202, json=CHARGE_RESPONSE)

    client, sleeps = make_client(handler)
    result = await create_charge(client)

    assert result.gateway_id == "ewc_123"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


async def test_exhausted_retries_carry_last_status_and_body():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, text=f"invalid channel properties #{len(calls)}")

    client, sleeps = make_client(handler)
    with pytest.raises(UpstreamError) as excinfo:
        await create_charge(client)

    err = excinfo.value
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]
    assert err.status_code == 400
    assert err.attempts == 3
    assert err.operation == "charge"
    assert "invalid channel properties #3" in err.body
    assert "400" in str(err)


async def test_transport_errors_are_retried_then_reported_without_status():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    client, sleeps = make_client(handler)
    with pytest.raises(UpstreamError) as excinfo:
        await create_charge(client)

    assert excinfo.value.status_code is None
    assert "ConnectTimeout" in excinfo.value.body
    assert sleeps == [0.5, 1.0]


async def test_unknown_charge_status_is_coerced_to_pending():
    metrics = StatusDriftMetrics()

    def handler(request):
        return httpx.Response(201, json={**CHARGE_RESPONSE, "status": "AWAITING_AUTH"})

    client, _ = make_client(handler, metrics)
    result = await create_charge(client)

    assert result.status.value == PENDING
    assert result.status.raw == "AWAITING_AUTH"
    assert metrics.count("funding", "AWAITING_AUTH") == 1


async def test_request_body_is_redacted_in_logs(caplog, monkeypatch):
    monkeypatch.setattr(logging.getLogger("notipay"), "propagate", True)
    caplog.set_level(logging.DEBUG, logger="notipay.gateway")

    def handler(request):
        return httpx.Response(201, json=CHARGE_RESPONSE)

    client, _ = make_client(handler)
    await create_charge(client)

    assert "****4567" in caplog.text
    assert "+639171234567" not in caplog.text


# ----------------------------
# Invoices and lookups
# ----------------------------
async def test_create_invoice():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "inv_1", "status": "PENDING", "invoice_url": "https://pay.test/inv_1"})

    client, _ = make_client(handler)
    result = await client.create_invoice(
        reference_id="ref-2",
        payer_email="juan@notipay.ph",
        amount=250.0,
        description="Dinner - Friday",
        success_url="https://notipay.test/success",
        failure_url="https://notipay.test/failure",
    )

    assert result.product == "invoice"
    assert result.gateway_id == "inv_1"
    assert result.checkout_url == "https://pay.test/inv_1"
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/v2/invoices"
    assert body["external_id"] == "ref-2"
    assert body["payer_email"] == "juan@notipay.ph"


async def test_get_funding_status():
    def handler(request):
        assert request.url.path == "/ewallets/charges/ewc_123"
        return httpx.Response(200, json={"id": "ewc_123", "status": "SUCCEEDED"})

    client, _ = make_client(handler)
    status = await client.get_funding_status("ewc_123")
    assert status.value == SUCCEEDED


async def test_find_funding_by_reference():
    def handler(request):
        assert request.url.params["reference_id"] == "ref-1"
        return httpx.Response(200, json={"data": [CHARGE_RESPONSE]})

    client, _ = make_client(handler)
    result = await client.find_funding_by_reference("ref-1")
    assert result.gateway_id == "ewc_123"
    assert result.checkout_url.endswith("/deeplink/ewc_123")


async def test_find_funding_by_reference_invoice_list():
    def handler(request):
        assert request.url.params["external_id"] == "ref-2"
        return httpx.Response(200, json=[{"id": "inv_1", "status": "PAID", "invoice_url": "https://pay.test/inv_1"}])

    client, _ = make_client(handler)
    result = await client.find_funding_by_reference("ref-2", "invoice")
    assert result.gateway_id == "inv_1"
    assert result.status.value == SUCCEEDED


@pytest.mark.parametrize("response", [httpx.Response(200, json={"data": []}), httpx.Response(404, text="not found")])
async def test_find_funding_by_reference_missing(response):
    client, sleeps = make_client(lambda request: response)
    assert await client.find_funding_by_reference("ref-404") is None
    assert sleeps == []


# ----------------------------
# Disbursements
# ----------------------------
async def test_create_disbursement_sends_idempotency_key():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202, json={"id": "disb_1", "status": "PENDING"})

    client, _ = make_client(handler)
    result = await create_disbursement(client)

    assert result.disbursement_id == "disb_1"
    assert result.status.value == PENDING
    request = seen[0]
    assert request.url.path == "/disbursements"
    assert request.headers["x-idempotency-key"] == "ref-1-disb"
    body = json.loads(request.content)
    assert body["account_number"] == "09181234567"
    assert body["account_holder_name"] == "Maria Santos"


async def test_create_disbursement_rejects_status_outside_allow_list():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"id": "disb_1", "status": "PENDING"})

    client, _ = make_client(handler)
    with pytest.raises(UpstreamError) as excinfo:
        await create_disbursement(client)
    assert excinfo.value.status_code == 200
    assert len(calls) == 3


async def test_create_disbursement_unknown_status_is_coerced():
    metrics = StatusDriftMetrics()

    def handler(request):
        return httpx.Response(201, json={"id": "disb_1", "status": "QUEUED"})

    client, _ = make_client(handler, metrics)
    result = await create_disbursement(client)
    assert result.status.value == SUCCEEDED
    assert metrics.count("disbursement", "QUEUED") == 1


@pytest.mark.parametrize(
    "response", [httpx.Response(202, json=[{"id": "disb_1"}]), httpx.Response(202, text="accepted")]
)
async def test_create_disbursement_rejects_non_object_body(response):
    client, sleeps = make_client(lambda request: response)
    with pytest.raises(UpstreamError, match="unexpected body") as excinfo:
        await create_disbursement(client)
    assert excinfo.value.status_code == 202
    assert sleeps == []


def test_gateway_config_requires_secret():
    class Cfg:
        GATEWAY_SECRET_KEY = ""

    with pytest.raises(RuntimeError):
        GatewayConfig.from_settings(Cfg())
