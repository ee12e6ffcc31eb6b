import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from application.dtos.payments import CreateRecipient, CreateSplit, InitializeCharge, SplitShare, TransferRequest
from infrastructure.external.payments import get_payment_gateway
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentRecoverableError
from infrastructure.external.payments.paystack_client import PaystackClient


SECRET = "sk_test_paystack"


def _client(handler):
    return PaystackClient(secret_key=SECRET, base_url="https://paystack.test", transport=httpx.MockTransport(handler))


def _ok(data):
    return httpx.Response(200, json={"status": True, "message": "ok", "data": data})


@pytest.mark.asyncio
async def test_initialize_sends_kobo_and_bearer():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return _ok({"authorization_url": "https://checkout.paystack.com/x", "access_code": "ac", "reference": "REF12345"})

    client = _client(handler)
    session = await client.initialize_charge(InitializeCharge(
        reference="REF12345", amount=Decimal("3000.50"), email="a@b.co", split_code="SPL_1",
    ))
    await client.aclose()

    assert seen["path"] == "/transaction/initialize"
    assert seen["auth"] == f"Bearer {SECRET}"
    assert seen["body"]["amount"] == 300050
    assert seen["body"]["split_code"] == "SPL_1"
    assert session.authorization_url == "https://checkout.paystack.com/x"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "provider_status, expected",
    [("success", "success"), ("failed", "failed"), ("reversed", "failed"), ("ongoing", "pending"), ("abandoned", "pending")],
)
async def test_verify_maps_status(provider_status, expected):
    def handler(request):
        return _ok({
            "reference": "REF12345",
            "status": provider_status,
            "amount": 300000,
            "fees": 7500,
            "currency": "NGN",
            "channel": "card",
            "authorization": {"country_code": "NG"},
            "paid_at": "2026-10-01T10:00:00.000Z",
        })

    client = _client(handler)
    result = await client.verify_transaction("REF12345")
    await client.aclose()

    assert result.status == expected
    assert result.provider_status == provider_status
    assert result.amount == Decimal("3000")
    assert result.fees == Decimal("75")
    assert result.card_country == "NG"
    assert result.paid_at is not None


@pytest.mark.asyncio
async def test_rejected_request_raises_provider_error():
    client = _client(lambda request: httpx.Response(400, json={"status": False, "message": "Invalid key"}))
    with pytest.raises(PaymentProviderError) as excinfo:
        await client.verify_transaction("REF12345")
    await client.aclose()
    assert excinfo.value.message == "Invalid key"
    assert excinfo.value.http_status == 400


@pytest.mark.asyncio
async def test_status_false_is_a_rejection_even_with_200():
    client = _client(lambda request: httpx.Response(200, json={"status": False, "message": "Transaction reference not found"}))
    with pytest.raises(PaymentProviderError):
        await client.verify_transaction("REF12345")
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code", [429, 502])
async def test_throttling_and_server_errors_are_recoverable(status_code):
    client = _client(lambda request: httpx.Response(status_code, json={"status": False}))
    with pytest.raises(PaymentRecoverableError):
        await client.verify_transaction("REF12345")
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_failure_is_retried_then_recoverable():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(PaymentRecoverableError):
        await client.verify_transaction("REF12345")
    await client.aclose()
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_split_recipient_and_transfer_payloads():
    bodies = {}

    def handler(request):
        bodies[request.url.path] = json.loads(request.content)
        if request.url.path == "/split":
            return _ok({"split_code": "SPL_abc"})
        if request.url.path == "/transferrecipient":
            return _ok({"recipient_code": "RCP_abc"})
        return _ok({"reference": "REF-SPO", "status": "success", "transfer_code": "TRF_1"})

    client = _client(handler)
    split = await client.create_split(CreateSplit(
        name="order-1", shares=[SplitShare(subaccount="ACCT_1", share=100000)],
    ))
    recipient = await client.create_transfer_recipient(CreateRecipient(
        name="Alpha", account_number="0123456789", bank_code="058",
    ))
    transfer = await client.execute_transfer(TransferRequest(
        amount=Decimal("1000"), recipient_code=recipient, reference="REF-SPO",
    ))
    await client.aclose()

    assert split.split_code == "SPL_abc"
    assert bodies["/split"]["subaccounts"] == [{"subaccount": "ACCT_1", "share": 100000}]
    assert recipient == "RCP_abc"
    assert bodies["/transfer"]["amount"] == 100000
    assert bodies["/transfer"]["recipient"] == "RCP_abc"
    assert transfer.status == "success"


def test_webhook_signature():
    client = PaystackClient(secret_key=SECRET)
    body = b'{"event":"charge.success","data":{"reference":"REF12345"}}'
    good = hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

    assert client.verify_signature(body, good) is True
    assert client.verify_signature(body, good.upper()) is True
    assert client.verify_signature(body + b" ", good) is False
    assert client.verify_signature(body, None) is False


def test_missing_secret_is_rejected(monkeypatch):
    from core.settings import payment_settings

    monkeypatch.setattr(payment_settings.paystack, "secret_key", None)
    with pytest.raises(RuntimeError):
        PaystackClient()


def test_factory_builds_paystack_client():
    assert isinstance(get_payment_gateway("paystack"), PaystackClient)
    with pytest.raises(ValueError):
        get_payment_gateway("stripe")
