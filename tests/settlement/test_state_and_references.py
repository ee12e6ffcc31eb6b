import re
from decimal import Decimal

import pytest

from domain.common.exceptions import (
    DomainValidationException,
    InvalidStateTransitionException,
    ReferenceCollisionError,
    ReferenceExhaustedException,
)
from domain.order.entity import Order, OrderStatus
from domain.payment.entity import PaymentIntent, PaymentStatus
from domain.settlement.entity import (
    AllocationStatus,
    PurchaseOrder,
    PurchaseOrderStatus,
    SupplierPaymentAllocation,
)
from domain.settlement.references import (
    CROCKFORD_ALPHABET,
    generate_payment_reference,
    generate_supplier_order_ref,
    mint_with_retry,
)


def _intent(**kw):
    values = dict(id=1, order_id=1, reference="ABCD1234", amount=Decimal("3000"), status=PaymentStatus.PENDING)
    values.update(kw)
    return PaymentIntent(**values)


def _allocation(status=AllocationStatus.HELD):
    return SupplierPaymentAllocation(
        id=1, payment_id=1, order_id=1, supplier_id=1, purchase_order_id=1,
        amount=Decimal("1000"), status=status,
    )


def test_payment_reference_shape():
    refs = {generate_payment_reference() for _ in range(200)}
    assert len(refs) > 190
    for ref in refs:
        assert len(ref) == 8
        assert set(ref) <= set(CROCKFORD_ALPHABET)
        assert ref != "00000000"


def test_supplier_order_ref_shape():
    assert re.fullmatch(r"SPO-[0-9A-Z]{4}-[0-9A-Z]{4}", generate_supplier_order_ref())


@pytest.mark.asyncio
async def test_mint_retries_only_on_collision():
    codes = iter(["AAA", "BBB", "CCC"])
    taken = {"AAA", "BBB"}

    async def create(code):
        if code in taken:
            raise ReferenceCollisionError(code)
        return code

    assert await mint_with_retry(create, lambda: next(codes), max_attempts=5) == "CCC"


@pytest.mark.asyncio
async def test_mint_gives_up_after_max_attempts():
    attempts = []

    async def create(code):
        attempts.append(code)
        raise ReferenceCollisionError(code)

    with pytest.raises(ReferenceExhaustedException):
        await mint_with_retry(create, lambda: "DUP", max_attempts=3, kind="payment_reference")
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_mint_propagates_other_errors():
    async def create(code):
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        await mint_with_retry(create, lambda: "X", max_attempts=3)


def test_intent_requires_positive_amount():
    with pytest.raises(DomainValidationException):
        _intent(amount=Decimal("0"))


def test_intent_paid_is_terminal():
    intent = _intent()
    intent.mark_paid(Decimal("3000"), Decimal("75"), channel="card")
    assert intent.status is PaymentStatus.PAID
    assert intent.fee_amount == Decimal("75")
    assert intent.paid_at is not None

    for transition in (intent.cancel, intent.mark_failed):
        with pytest.raises(InvalidStateTransitionException):
            transition()
    with pytest.raises(InvalidStateTransitionException):
        intent.mark_paid(Decimal("3000"), Decimal("0"))


def test_negative_fee_is_stored_as_zero():
    intent = _intent()
    intent.mark_paid(Decimal("3000"), Decimal("-5"))
    assert intent.fee_amount == Decimal("0")


def test_receipt_only_once_and_only_when_paid():
    intent = _intent()
    with pytest.raises(InvalidStateTransitionException):
        intent.issue_receipt("RCT-1", {})
    intent.mark_paid(Decimal("3000"), Decimal("0"))
    intent.issue_receipt("RCT-1", {"n": 1})
    intent.issue_receipt("RCT-2", {"n": 2})
    assert intent.receipt_no == "RCT-1"
    assert intent.receipt_data == {"n": 1}


def test_allocation_moves_forward_only():
    allocation = _allocation()
    allocation.mark_failed("bank down")
    assert allocation.status is AllocationStatus.FAILED
    assert allocation.meta["last_error"] == "bank down"

    assert allocation.mark_paid(transfer_reference="T-1") is True
    assert allocation.released_at is not None
    assert allocation.mark_paid() is False

    with pytest.raises(InvalidStateTransitionException):
        allocation.mark_failed("late failure")
    with pytest.raises(InvalidStateTransitionException):
        allocation.reverse()


def test_failed_allocation_cannot_be_reversed():
    allocation = _allocation(AllocationStatus.FAILED)
    with pytest.raises(InvalidStateTransitionException):
        allocation.reverse()


def test_purchase_order_funding_does_not_regress():
    po = PurchaseOrder(id=1, order_id=1, supplier_id=1, supplier_order_ref="SPO-AAAA-BBBB")
    assert po.mark_funded() is True
    assert po.mark_funded() is False
    po.status = PurchaseOrderStatus.DELIVERED
    assert po.mark_funded() is False
    assert po.status is PurchaseOrderStatus.DELIVERED


@pytest.mark.parametrize(
    "skip, expected",
    [(False, OrderStatus.AWAITING_FULFILLMENT), (True, OrderStatus.PAID)],
)
def test_order_advances_once(skip, expected):
    order = Order(id=1, status=OrderStatus.PENDING, total=Decimal("3000"))
    assert order.advance_on_payment(skip) is True
    assert order.status is expected
    assert order.advance_on_payment(skip) is False
