import re
from decimal import Decimal

import pytest
from sqlalchemy import select

from application.ports.settings_provider import SettlementSnapshot
from domain.order.entity import ActivityKind, OrderStatus
from domain.settlement.allocation import SupplierAllocationService
from domain.settlement.entity import AllocationStatus, PayoutStatus, PurchaseOrderStatus
from domain.settlement.profit import ProfitMode
from infrastructure.models import (
    FinalizationEventModel,
    OrderCommsModel,
    PurchaseOrderItemModel,
    PurchaseOrderModel,
    SupplierPaymentAllocationModel,
)


def default_snapshot(**overrides):
    values = {"profit_mode": ProfitMode.ACCURATE, "base_fee": Decimal("0"), "comms_unit_cost": Decimal("0")}
    values.update(overrides)
    return SettlementSnapshot(**values)


ALL_EFFECTS = [
    "FANOUT_COMPLETED",
    "SUPPLIER_NOTIFIED",
    "PAYOUTS_DISPATCHED",
    "RECEIPT_ISSUED",
    "PROFIT_COMPUTED",
    "ORDER_PAID_EMAIL_SENT",
]


async def _paid(harness, services=None, fees="75"):
    services = services or harness.services
    order_id = await harness.two_supplier_order()
    checkout = await services.checkout.init_checkout(order_id)
    harness.gateway.succeed(checkout.reference, "3000", fees=fees)
    await services.verification.verify_by_reference(checkout.reference)
    return order_id, checkout


@pytest.mark.asyncio
async def test_finalize_fans_out_one_purchase_order_per_supplier(harness):
    order_id, checkout = await _paid(harness)

    pos = sorted(await harness.purchase_orders(order_id), key=lambda p: p.supplier_amount)
    assert [p.supplier_amount for p in pos] == [Decimal("1000"), Decimal("1500")]
    assert [p.platform_fee for p in pos] == [Decimal("200"), Decimal("100")]
    assert all(p.status is PurchaseOrderStatus.FUNDED for p in pos)
    assert all(re.fullmatch(r"SPO-[0-9A-Z]{4}-[0-9A-Z]{4}", p.supplier_order_ref) for p in pos)
    assert await harness.count(PurchaseOrderItemModel) == 2
    assert len(await harness.activities(order_id, ActivityKind.SUPPLIER_REF_CREATED.value)) == 2

    allocations = await harness.allocations(checkout.payment_id)
    assert sorted(a.amount for a in allocations) == [Decimal("1000"), Decimal("1500")]
    assert all(a.status is AllocationStatus.HELD for a in allocations)

    intent = await harness.intent(checkout.reference)
    assert set(intent.breakdown) == {str(p.supplier_id) for p in pos}


@pytest.mark.asyncio
async def test_finalize_records_every_effect_once(harness):
    order_id, checkout = await _paid(harness)

    events = await harness.events(checkout.payment_id)
    assert sorted(events) == sorted(["FINALIZE_PAID", *ALL_EFFECTS])
    assert (await harness.order(order_id)).status is OrderStatus.AWAITING_FULFILLMENT
    assert len(await harness.activities(order_id, ActivityKind.FINALIZE_PAID.value)) == 1

    async with harness.session_factory() as session:
        (fee_slice,) = (await session.execute(
            select(OrderCommsModel).where(OrderCommsModel.reason == "SERVICE_FEE_SLICE")
        )).scalars().all()
    assert fee_slice.amount == Decimal("200")


@pytest.mark.asyncio
async def test_finalize_twice_changes_nothing(harness):
    order_id, checkout = await _paid(harness)
    dispatched = list(harness.dispatcher.names())

    report = await harness.services.finalizer.finalize(checkout.payment_id)

    assert report.core_executed is False
    assert report.already_finalized is True
    assert report.skipped == ALL_EFFECTS
    assert report.completed == report.failed == report.pending == []
    assert harness.dispatcher.names() == dispatched
    assert await harness.count(PurchaseOrderModel, order_id=order_id) == 2
    assert await harness.count(SupplierPaymentAllocationModel, payment_id=checkout.payment_id) == 2
    assert await harness.count(OrderCommsModel, order_id=order_id, reason="SERVICE_FEE_SLICE") == 1


@pytest.mark.asyncio
async def test_finalize_ignores_unpaid_payment(harness):
    order_id = await harness.two_supplier_order()
    checkout = await harness.services.checkout.init_checkout(order_id)

    report = await harness.services.finalizer.finalize(checkout.payment_id)

    assert report.core_executed is False
    assert report.completed == []
    assert await harness.count(FinalizationEventModel) == 0
    assert (await harness.order(order_id)).status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_skip_fulfillment_confirmation_marks_order_paid(harness):
    services = harness.configure(skip_fulfillment_confirmation=True)
    order_id, _ = await _paid(harness, services)
    assert (await harness.order(order_id)).status is OrderStatus.PAID


@pytest.mark.asyncio
async def test_accurate_profit_for_two_suppliers(harness):
    services = harness.configure(
        snapshot=default_snapshot(base_fee=Decimal("50"), comms_unit_cost=Decimal("10"))
    )
    _, checkout = await _paid(harness, services)

    async with harness.uow_factory(readonly=True) as uow:
        breakdown = await uow.profits.get_by_payment(checkout.payment_id)

    assert breakdown.cogs == Decimal("2500")
    assert breakdown.gateway_fee == Decimal("75")
    assert breakdown.comms_cost == Decimal("20")
    assert breakdown.base_fee == Decimal("50")
    assert breakdown.profit == Decimal("355")
    assert breakdown.mode is ProfitMode.ACCURATE


@pytest.mark.asyncio
async def test_profit_recompute_overwrites(harness):
    _, checkout = await _paid(harness)
    services = harness.configure(snapshot=default_snapshot(profit_mode=ProfitMode.SIMPLE))

    dto = await services.profits.recompute(checkout.payment_id)

    assert dto.mode == "simple"
    assert dto.profit == Decimal("500")
    async with harness.uow_factory(readonly=True) as uow:
        assert (await uow.profits.get_by_payment(checkout.payment_id)).profit == Decimal("500")


@pytest.mark.asyncio
async def test_profit_falls_back_to_offer_prices(harness):
    supplier = await harness.add_supplier("Gamma")
    await harness.add_offer(supplier, product_id=42, price="900")
    await harness.add_offer(supplier, product_id=42, price="1000", variant_id=3)
    order_id = await harness.add_order([
        {"unit_price": "1500", "product_id": 42},
        {"unit_price": "1000", "product_id": 42, "variant_id": 3},
        {"unit_price": "500", "product_id": 77},
    ])
    checkout = await harness.services.checkout.init_checkout(order_id)
    harness.gateway.succeed(checkout.reference, "3000", fees="0")
    await harness.services.verification.verify_by_reference(checkout.reference)

    dto = await harness.services.profits.recompute(checkout.payment_id)

    assert [ln.source for ln in dto.lines] == ["offer_product", "offer_exact", "none"]
    # 无规格的行取该商品任意规格的最低报价
    assert [ln.unit_cost for ln in dto.lines] == [Decimal("900"), Decimal("1000"), Decimal("0")]
    assert dto.cogs == Decimal("1900")
    assert dto.estimated_cogs == Decimal("1900")
    assert dto.cogs_estimated is True
    # 未登记手续费时按费率估算：3000 * 1.5% + 100
    assert dto.gateway_fee == Decimal("145")


@pytest.mark.asyncio
async def test_suppliers_and_customer_notified_once(harness):
    order_id, _ = await _paid(harness)

    names = harness.dispatcher.names()
    assert names.count("notifications.supplier_order") == 2
    assert names.count("notifications.customer_order_paid") == 1
    supplier_calls = [c for c in harness.dispatcher.calls if c.name == "notifications.supplier_order"]
    assert {c.kwargs["email"] for c in supplier_calls} == {"alpha@example.com", "beta@example.com"}
    assert await harness.count(OrderCommsModel, order_id=order_id, reason="SUPPLIER_NOTIFY") == 2


@pytest.mark.asyncio
async def test_comms_write_failure_queues_no_supplier_notice(harness, monkeypatch):
    from infrastructure.repositories.order_repository import SQLAlchemyOrderCommsRepository

    original = SQLAlchemyOrderCommsRepository.ensure_supplier_charge
    writes = []

    async def second_write_fails(self, order_id, supplier_id, reason, amount):
        writes.append(supplier_id)
        if len(writes) == 2:
            raise RuntimeError("comms ledger unavailable")
        return await original(self, order_id, supplier_id, reason, amount)

    monkeypatch.setattr(SQLAlchemyOrderCommsRepository, "ensure_supplier_charge", second_write_fails)
    order_id, checkout = await _paid(harness)

    assert "SUPPLIER_NOTIFIED" not in await harness.events(checkout.payment_id)
    assert "notifications.supplier_order" not in harness.dispatcher.names()
    assert await harness.count(OrderCommsModel, order_id=order_id, reason="SUPPLIER_NOTIFY") == 0

    monkeypatch.setattr(SQLAlchemyOrderCommsRepository, "ensure_supplier_charge", original)
    report = await harness.services.finalizer.finalize(checkout.payment_id)

    assert "SUPPLIER_NOTIFIED" in report.completed
    notified = [c.kwargs["supplier_id"] for c in harness.dispatcher.calls if c.name == "notifications.supplier_order"]
    assert len(notified) == len(set(notified)) == 2


@pytest.mark.asyncio
async def test_failed_effect_is_retried_on_next_finalize(harness):
    harness.dispatcher.fail = True
    order_id, checkout = await _paid(harness)

    events = await harness.events(checkout.payment_id)
    assert "SUPPLIER_NOTIFIED" not in events
    assert "ORDER_PAID_EMAIL_SENT" not in events
    assert "RECEIPT_ISSUED" in events
    # 失败的副作用整体回滚，不留下通知成本
    assert await harness.count(OrderCommsModel, order_id=order_id, reason="SUPPLIER_NOTIFY") == 0

    harness.dispatcher.fail = False
    report = await harness.services.finalizer.finalize(checkout.payment_id)

    assert report.completed == ["SUPPLIER_NOTIFIED", "ORDER_PAID_EMAIL_SENT"]
    assert await harness.count(OrderCommsModel, order_id=order_id, reason="SUPPLIER_NOTIFY") == 2


@pytest.mark.asyncio
async def test_deferred_fanout_waits_for_background_task(harness):
    services = harness.configure(defer_fanout=True)
    order_id, checkout = await _paid(harness, services)

    assert "settlement.fan_out" in harness.dispatcher.names()
    events = await harness.events(checkout.payment_id)
    assert "FINALIZE_PAID" in events
    for name in ("FANOUT_COMPLETED", "SUPPLIER_NOTIFIED", "PAYOUTS_DISPATCHED"):
        assert name not in events
    assert await harness.count(PurchaseOrderModel, order_id=order_id) == 0

    fanned = await services.finalizer.fan_out_for_payment(checkout.payment_id)
    assert fanned.completed == ["FANOUT_COMPLETED"]
    report = await services.finalizer.finalize(checkout.payment_id)

    assert report.completed == ["SUPPLIER_NOTIFIED", "PAYOUTS_DISPATCHED"]
    assert await harness.count(PurchaseOrderModel, order_id=order_id) == 2
    assert await harness.count(SupplierPaymentAllocationModel, payment_id=checkout.payment_id) == 2


@pytest.mark.asyncio
async def test_refanout_keeps_references_and_allocation_state(harness):
    order_id, checkout = await _paid(harness)
    before = {p.supplier_id: p.supplier_order_ref for p in await harness.purchase_orders(order_id)}
    allocation = (await harness.allocations(checkout.payment_id))[0]
    await harness.services.admin.mark_allocation_paid(allocation.id)

    async with harness.uow_factory() as uow:
        intent = await uow.payment_intents.get_by_id(checkout.payment_id)
        pos = await uow.purchase_orders.list_for_order(order_id)
        await SupplierAllocationService(uow.allocations, uow.purchase_orders).allocate(intent, pos)

    after = {p.supplier_id: p.supplier_order_ref for p in await harness.purchase_orders(order_id)}
    assert after == before
    statuses = {a.id: a.status for a in await harness.allocations(checkout.payment_id)}
    assert statuses[allocation.id] is AllocationStatus.PAID
    assert len(statuses) == 2
    released = [p for p in await harness.purchase_orders(order_id) if p.payout_status is PayoutStatus.RELEASED]
    assert len(released) == 1
