from decimal import Decimal

import pytest

from domain.common.exceptions import OrderNotFoundException, PaymentConflictException, PaymentIntentNotFoundException
from domain.payment.entity import PaymentStatus
from infrastructure.external.payments.exceptions import PaymentProviderError
from infrastructure.models import FinalizationEventModel, PaymentIntentModel


@pytest.mark.asyncio
async def test_gateway_checkout_initializes_hosted_page(harness):
    order_id = await harness.two_supplier_order()

    result = await harness.services.checkout.init_checkout(order_id)

    assert result.status == "PENDING"
    assert result.amount == Decimal("3000")
    assert result.resumed is False
    assert result.split_applied is False
    assert result.authorization_url == f"https://checkout.test/{result.reference}"
    (charge,) = harness.gateway.initialized
    assert charge.reference == result.reference
    assert charge.email == "buyer@example.com"
    assert charge.split_code is None
    assert f"reference={result.reference}" in charge.callback_url
    assert charge.metadata == {"order_id": order_id, "payment_id": result.payment_id}


@pytest.mark.asyncio
async def test_checkout_resumes_fresh_pending_intent(harness):
    order_id = await harness.two_supplier_order()

    first = await harness.services.checkout.init_checkout(order_id)
    second = await harness.services.checkout.init_checkout(order_id)

    assert second.resumed is True
    assert second.reference == first.reference
    assert second.authorization_url == first.authorization_url
    assert len(harness.gateway.initialized) == 1
    assert await harness.count(PaymentIntentModel, order_id=order_id) == 1


@pytest.mark.asyncio
async def test_expired_pending_intent_is_replaced(harness):
    order_id = await harness.two_supplier_order()
    services = harness.configure(pending_ttl_minutes=0)

    first = await services.checkout.init_checkout(order_id)
    second = await services.checkout.init_checkout(order_id)

    assert second.reference != first.reference
    assert (await harness.intent(first.reference)).status is PaymentStatus.CANCELED
    assert (await harness.intent(second.reference)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_split_is_created_only_when_enabled(harness):
    order_id = await harness.two_supplier_order(payout_subaccount_code="ACCT_sub")
    services = harness.configure(split_enabled=True)

    result = await services.checkout.init_checkout(order_id)

    assert result.split_applied is True
    (split,) = harness.gateway.splits
    assert [s.share for s in split.shares] == [100000, 150000]
    assert harness.gateway.initialized[0].split_code == "SPL_1"
    assert await harness.count(
        FinalizationEventModel, payment_id=result.payment_id, event_type="SPLIT_USED"
    ) == 1


@pytest.mark.asyncio
async def test_split_plan_withheld_when_disabled(harness):
    order_id = await harness.two_supplier_order(payout_subaccount_code="ACCT_sub")

    result = await harness.services.checkout.init_checkout(order_id)

    assert result.split_applied is False
    assert harness.gateway.splits == []
    intent = await harness.intent(result.reference)
    assert len(intent.init_payload["split_plan"]) == 2


@pytest.mark.asyncio
async def test_sandbox_checkout_never_calls_gateway(harness):
    order_id = await harness.two_supplier_order()
    services = harness.configure(sandbox_mode=True)

    result = await services.checkout.init_checkout(order_id)

    assert result.sandbox is True
    assert result.authorization_url is None
    assert harness.gateway.initialized == []


@pytest.mark.asyncio
async def test_bank_transfer_returns_instructions(harness):
    order_id = await harness.two_supplier_order()
    services = harness.configure(bank_name="Test Bank", bank_account_name="Market Ltd", bank_account_number="0123456789")

    result = await services.checkout.init_checkout(order_id, channel="bank_transfer")

    assert result.channel == "bank_transfer"
    assert result.bank_transfer is not None
    assert result.bank_transfer.account_number == "0123456789"
    assert result.bank_transfer.reference == result.reference
    assert result.bank_transfer.amount == Decimal("3000")
    assert harness.gateway.initialized == []


@pytest.mark.asyncio
async def test_channels_keep_separate_pending_intents(harness):
    order_id = await harness.two_supplier_order()

    card = await harness.services.checkout.init_checkout(order_id)
    bank = await harness.services.checkout.init_checkout(order_id, channel="bank_transfer")

    assert card.reference != bank.reference
    assert bank.resumed is False


@pytest.mark.asyncio
async def test_checkout_without_gateway_fails_loudly(harness):
    order_id = await harness.two_supplier_order()
    services = harness.build(gateway_enabled=False)

    with pytest.raises(PaymentProviderError):
        await services.checkout.init_checkout(order_id)


@pytest.mark.asyncio
async def test_checkout_unknown_order(harness):
    with pytest.raises(OrderNotFoundException):
        await harness.services.checkout.init_checkout(999)


@pytest.mark.asyncio
async def test_checkout_rejected_once_order_is_paid(harness):
    order_id = await harness.two_supplier_order()
    result = await harness.services.checkout.init_checkout(order_id)
    harness.gateway.succeed(result.reference, "3000", fees="75")
    await harness.services.verification.verify_by_reference(result.reference)

    with pytest.raises(PaymentConflictException):
        await harness.services.checkout.init_checkout(order_id)


@pytest.mark.asyncio
async def test_status_lookup(harness):
    order_id = await harness.two_supplier_order()
    result = await harness.services.checkout.init_checkout(order_id)

    latest = await harness.services.checkout.get_status(order_id)
    by_ref = await harness.services.checkout.get_status(order_id, result.reference)

    assert latest.reference == by_ref.reference == result.reference
    assert latest.status == "PENDING"
    with pytest.raises(PaymentIntentNotFoundException):
        await harness.services.checkout.get_status(order_id + 1, result.reference)


@pytest.mark.asyncio
async def test_expire_pending_cancels_stale_intents(harness):
    order_id = await harness.two_supplier_order()
    result = await harness.services.checkout.init_checkout(order_id)

    assert await harness.services.checkout.expire_pending() == 0
    services = harness.configure(pending_ttl_minutes=0)
    assert await services.checkout.expire_pending() == 1
    assert (await harness.intent(result.reference)).status is PaymentStatus.CANCELED
