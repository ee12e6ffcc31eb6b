from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from api.dependencies import get_settlement_services
from main import app
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


ADMIN = {"X-Admin-Key": "test-admin-key"}


@pytest_asyncio.fixture
async def client(harness):
    app.dependency_overrides[get_settlement_services] = lambda: harness.services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        "/api/v1/payments/init",
        "/api/v1/payments/verify",
        "/api/v1/payments/webhook/paystack",
        "/api/v1/payments/42/receipt",
        "/api/v1/admin/payments/42/finalize",
        "/api/v1/admin/payouts/allocations/42/mark-paid",
    ],
)
async def test_settlement_routes_registered(client, path):
    # 路径存在但方法不匹配时返回 405，未注册的路径返回 404
    resp = await client.delete(path)
    assert resp.status_code == 405


@pytest.mark.asyncio
async def test_unknown_route_is_404(client):
    resp = await client.delete("/api/v1/payments/nope/nothing")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"status": "healthy"}


@pytest.mark.asyncio
async def test_init_then_verify_over_http(client, harness):
    order_id = await harness.two_supplier_order()

    resp = await client.post("/api/v1/payments/init", json={"order_id": order_id})
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == BusinessCode.SUCCESS
    reference = body["data"]["reference"]
    assert Decimal(body["data"]["amount"]) == Decimal("3000")

    harness.gateway.succeed(reference, "3000", fees="75")
    resp = await client.post("/api/v1/payments/verify", json={"order_id": order_id, "reference": reference})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "PAID"

    resp = await client.get("/api/v1/payments/status", params={"order_id": order_id})
    assert resp.json()["data"]["status"] == "PAID"
    assert resp.json()["data"]["receipt_no"].startswith("RCT-")

    resp = await client.get(f"/api/v1/payments/{reference}/receipt")
    assert resp.status_code == 200
    assert len(resp.json()["data"]["data"]["items"]) == 2


@pytest.mark.asyncio
async def test_unknown_order_maps_to_404(client):
    resp = await client.post("/api/v1/payments/init", json={"order_id": 999})
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == BusinessCode.ORDER_NOT_FOUND
    assert body["error"]["type"]


@pytest.mark.asyncio
async def test_invalid_payload_is_422(client):
    resp = await client.post("/api/v1/payments/init", json={"order_id": 0})
    assert resp.status_code == 422
    assert resp.json()["code"] == BusinessCode.PARAM_VALIDATION_ERROR


@pytest.mark.asyncio
async def test_webhook_signature_and_ack(client, harness, webhook_body):
    order_id = await harness.two_supplier_order()
    checkout = await harness.services.checkout.init_checkout(order_id)
    body = webhook_body(checkout.reference, 300000, fees_minor=7500)

    rejected = await client.post(
        "/api/v1/payments/webhook/paystack", content=body, headers={"x-paystack-signature": "bad"}
    )
    assert rejected.status_code == 401
    assert rejected.json()["code"] == PaymentCode.SIGNATURE_ERROR

    accepted = await client.post(
        "/api/v1/payments/webhook/paystack",
        content=body,
        headers={"x-paystack-signature": harness.gateway.sign(body), "content-type": "application/json"},
    )
    assert accepted.status_code == 200
    assert accepted.json()["data"]["processed"] is True

    other = webhook_body("UNKNOWN1", 300000)
    ignored = await client.post(
        "/api/v1/payments/webhook/paystack", content=other, headers={"x-paystack-signature": harness.gateway.sign(other)}
    )
    assert ignored.status_code == 200
    assert ignored.json()["data"]["reason"] == "unknown_reference"


@pytest.mark.asyncio
async def test_admin_routes_require_key(client, harness):
    order_id = await harness.two_supplier_order()
    checkout = await harness.services.checkout.init_checkout(order_id)

    missing = await client.post(f"/api/v1/admin/payments/{checkout.payment_id}/finalize")
    wrong = await client.post(
        f"/api/v1/admin/payments/{checkout.payment_id}/finalize", headers={"X-Admin-Key": "nope"}
    )
    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert missing.json()["code"] == BusinessCode.FORBIDDEN


@pytest.mark.asyncio
async def test_admin_finalize_profit_and_mark_paid(client, harness):
    order_id = await harness.two_supplier_order()
    checkout = await harness.services.checkout.init_checkout(order_id)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")
    await harness.services.verification.verify_by_reference(checkout.reference)

    resp = await client.post(f"/api/v1/admin/payments/{checkout.payment_id}/finalize", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["data"]["already_finalized"] is True

    resp = await client.post(f"/api/v1/admin/payments/{checkout.payment_id}/profit", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["data"]["mode"] == "accurate"

    allocation = (await harness.allocations(checkout.payment_id))[0]
    resp = await client.post(
        f"/api/v1/admin/payouts/allocations/{allocation.id}/mark-paid",
        json={"create_ledger": True, "note": "manual"},
        headers=ADMIN,
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "PAID"
    assert resp.json()["data"]["ledger_entry_id"] is not None

    resp = await client.post("/api/v1/admin/payouts/allocations/9999/mark-paid", headers=ADMIN)
    assert resp.status_code == 404
