import re
from decimal import Decimal

import pytest

from domain.common.exceptions import (
    AllocationNotFoundException,
    BusinessException,
    InvalidStateTransitionException,
)
from domain.order.entity import ActivityKind
from domain.settlement.entity import AllocationStatus, PayoutStatus
from infrastructure.external.payments.exceptions import PaymentProviderError
from infrastructure.models import SupplierLedgerEntryModel
from shared.codes import BusinessCode


BANK = {"bank_code": "058", "account_number": "0123456789", "account_name": "Supplier Ltd"}


async def _paid(harness, services=None, **supplier_fields):
    services = services or harness.services
    order_id = await harness.two_supplier_order(**supplier_fields)
    checkout = await services.checkout.init_checkout(order_id)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")
    await services.verification.verify_by_reference(checkout.reference)
    return order_id, checkout


@pytest.mark.asyncio
async def test_transfers_pay_each_supplier_once(harness):
    order_id, checkout = await _paid(harness, **BANK)

    assert len(harness.gateway.recipients) == 2
    assert sorted(t.amount for t in harness.gateway.transfers) == [Decimal("1000"), Decimal("1500")]
    pos = {p.id: p for p in await harness.purchase_orders(order_id)}
    expected_refs = {f"{checkout.reference}-{p.supplier_order_ref}" for p in pos.values()}
    assert {t.reference for t in harness.gateway.transfers} == expected_refs
    assert all(p.payout_status is PayoutStatus.RELEASED for p in pos.values())
    for allocation in await harness.allocations(checkout.payment_id):
        assert allocation.status is AllocationStatus.PAID
        assert allocation.transfer_reference in expected_refs

    await harness.services.finalizer.finalize(checkout.payment_id)
    assert len(harness.gateway.transfers) == 2


@pytest.mark.asyncio
async def test_failed_transfer_is_retried(harness):
    harness.gateway.transfer_error = PaymentProviderError("insufficient balance", provider="paystack")
    order_id, checkout = await _paid(harness, **BANK)

    allocations = await harness.allocations(checkout.payment_id)
    assert all(a.status is AllocationStatus.FAILED for a in allocations)
    assert all(a.meta["last_error"] == "insufficient balance" for a in allocations)
    assert "PAYOUTS_DISPATCHED" not in await harness.events(checkout.payment_id)

    harness.gateway.transfer_error = None
    report = await harness.services.finalizer.finalize(checkout.payment_id)

    assert report.completed == ["PAYOUTS_DISPATCHED"]
    assert all(a.status is AllocationStatus.PAID for a in await harness.allocations(checkout.payment_id))
    # 收款人在第一次尝试时已保存
    assert len(harness.gateway.recipients) == 2


@pytest.mark.asyncio
async def test_existing_recipient_code_is_reused(harness):
    await _paid(harness, recipient_code="RCP_known")

    assert harness.gateway.recipients == []
    assert {t.recipient_code for t in harness.gateway.transfers} == {"RCP_known"}


@pytest.mark.asyncio
async def test_supplier_without_payout_details_stays_held(harness):
    _, checkout = await _paid(harness)

    assert harness.gateway.transfers == []
    assert all(a.status is AllocationStatus.HELD for a in await harness.allocations(checkout.payment_id))
    assert "PAYOUTS_DISPATCHED" in await harness.events(checkout.payment_id)


@pytest.mark.asyncio
async def test_split_payment_skips_transfers(harness):
    services = harness.configure(split_enabled=True)
    _, checkout = await _paid(harness, services, payout_subaccount_code="ACCT_sub", **BANK)

    outcome = await services.payouts.dispatch_for_payment(checkout.payment_id)

    assert outcome.mode == "split"
    assert harness.gateway.transfers == []
    assert "PAYOUTS_DISPATCHED" in await harness.events(checkout.payment_id)


@pytest.mark.asyncio
async def test_receipt_issued_with_snapshot(harness):
    order_id, checkout = await _paid(harness)

    receipt = await harness.services.receipts.get_receipt(checkout.reference)
    by_id = await harness.services.receipts.get_receipt(str(checkout.payment_id))

    pattern = rf"RCT-\d{{8}}-{checkout.reference[-6:]}{str(checkout.payment_id)[-4:]}"
    assert re.fullmatch(pattern, receipt.receipt_no)
    assert by_id.receipt_no == receipt.receipt_no
    assert receipt.data["order_id"] == order_id
    assert receipt.data["amount"] == "3000.00"
    assert receipt.data["customer"]["email"] == "buyer@example.com"
    assert len(receipt.data["items"]) == 2


@pytest.mark.asyncio
async def test_receipt_issued_only_once(harness):
    _, checkout = await _paid(harness)
    first = await harness.services.receipts.get_receipt(checkout.reference)

    again = await harness.services.receipts.issue_receipt_once(checkout.payment_id)

    assert again["receipt_no"] == first.receipt_no
    assert again["issued_at"] == first.data["issued_at"]


@pytest.mark.asyncio
async def test_receipt_unavailable_before_payment(harness):
    order_id = await harness.two_supplier_order()
    checkout = await harness.services.checkout.init_checkout(order_id)

    with pytest.raises(BusinessException) as excinfo:
        await harness.services.receipts.get_receipt(checkout.reference)
    assert excinfo.value.code == BusinessCode.NOT_FOUND
    assert excinfo.value.error_type == "ReceiptNotAvailable"


@pytest.mark.asyncio
async def test_admin_mark_paid_writes_one_ledger_entry(harness):
    order_id, checkout = await _paid(harness)
    allocation = (await harness.allocations(checkout.payment_id))[0]

    first = await harness.services.admin.mark_allocation_paid(
        allocation.id, create_ledger=True, note="paid by bank app", admin_id="ops"
    )
    second = await harness.services.admin.mark_allocation_paid(allocation.id, create_ledger=True, admin_id="ops")

    assert first.status == "PAID"
    assert first.ledger_entry_id is not None
    assert first.note == "paid by bank app"
    assert second.status == "PAID"
    assert second.ledger_entry_id is None
    assert await harness.count(SupplierLedgerEntryModel, supplier_id=allocation.supplier_id) == 1
    assert len(await harness.activities(order_id, ActivityKind.ALLOCATION_MARKED_PAID.value)) == 1
    po = next(p for p in await harness.purchase_orders(order_id) if p.id == allocation.purchase_order_id)
    assert po.payout_status is PayoutStatus.RELEASED


@pytest.mark.asyncio
async def test_admin_mark_paid_without_ledger(harness):
    _, checkout = await _paid(harness)
    allocation = (await harness.allocations(checkout.payment_id))[0]

    result = await harness.services.admin.mark_allocation_paid(allocation.id)

    assert result.status == "PAID"
    assert result.ledger_entry_id is None
    assert await harness.count(SupplierLedgerEntryModel) == 0


@pytest.mark.asyncio
async def test_admin_cannot_pay_reversed_allocation(harness):
    _, checkout = await _paid(harness)
    allocation = (await harness.allocations(checkout.payment_id))[0]
    async with harness.uow_factory() as uow:
        current = await uow.allocations.get_by_id(allocation.id)
        current.reverse(note="order canceled")
        await uow.allocations.update(current)

    with pytest.raises(InvalidStateTransitionException):
        await harness.services.admin.mark_allocation_paid(allocation.id)
    with pytest.raises(AllocationNotFoundException):
        await harness.services.admin.mark_allocation_paid(9999)
