import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from domain.common.exceptions import PaymentIntentNotFoundException, ReferenceMismatchException
from domain.order.entity import ActivityKind, OrderStatus
from domain.payment.entity import PaymentStatus
from infrastructure.external.payments.exceptions import PaymentRecoverableError, PaymentSignatureError
from infrastructure.models import (
    FinalizationEventModel,
    PaymentIntentModel,
    SupplierPaymentAllocationModel,
)


class MemoryDeliveryCache:
    def __init__(self):
        self.keys = {}

    async def seen(self, key):
        return key in self.keys

    async def remember(self, key, ttl_seconds):
        self.keys[key] = ttl_seconds


async def _checkout(harness, **kwargs):
    order_id = await harness.two_supplier_order()
    result = await harness.services.checkout.init_checkout(order_id, **kwargs)
    return order_id, result


@pytest.mark.asyncio
async def test_pull_verification_marks_paid_and_finalizes(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")

    result = await harness.services.verification.verify_by_reference(checkout.reference, order_id)

    assert result.status == "PAID"
    assert result.message == "payment verified"
    intent = await harness.intent(checkout.reference)
    assert intent.status is PaymentStatus.PAID
    assert intent.fee_amount == Decimal("75")
    assert (await harness.order(order_id)).status is OrderStatus.AWAITING_FULFILLMENT
    assert "FINALIZE_PAID" in await harness.events(intent.id)


@pytest.mark.asyncio
async def test_repeat_verification_is_a_no_op(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")
    await harness.services.verification.verify_by_reference(checkout.reference)
    events_before = await harness.events(checkout.payment_id)

    again = await harness.services.verification.verify_by_reference(checkout.reference)

    assert again.status == "PAID"
    assert again.message == "already verified"
    assert await harness.events(checkout.payment_id) == events_before
    assert await harness.count(SupplierPaymentAllocationModel, payment_id=checkout.payment_id) == 2


@pytest.mark.asyncio
async def test_paying_one_intent_cancels_pending_siblings(harness):
    order_id, card = await _checkout(harness)
    bank = await harness.services.checkout.init_checkout(order_id, channel="bank_transfer")
    harness.gateway.succeed(card.reference, "3000", fees="75")

    await harness.services.verification.verify_by_reference(card.reference)

    assert (await harness.intent(bank.reference)).status is PaymentStatus.CANCELED
    assert await harness.count(PaymentIntentModel, order_id=order_id, status="PAID") == 1


@pytest.mark.asyncio
async def test_gateway_error_leaves_intent_pending(harness):
    _, checkout = await _checkout(harness)
    harness.gateway.verifications[checkout.reference] = PaymentRecoverableError("timeout", provider="paystack")

    result = await harness.services.verification.verify_by_reference(checkout.reference)

    assert result.status == "PENDING"
    assert result.message == "verification pending"
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_gateway_still_processing(harness):
    _, checkout = await _checkout(harness)

    result = await harness.services.verification.verify_by_reference(checkout.reference)

    assert result.status == "PENDING"
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_reference_mismatch_is_rejected_and_logged(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "3000", reported_reference="SOMEONEELSE")

    with pytest.raises(ReferenceMismatchException):
        await harness.services.verification.verify_by_reference(checkout.reference)

    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING
    (activity,) = await harness.activities(order_id, ActivityKind.VERIFY_MISMATCH.value)
    assert activity.meta == {"expected": checkout.reference, "received": "SOMEONEELSE"}


@pytest.mark.asyncio
async def test_failed_charge_marks_intent_failed(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.fail(checkout.reference, provider_status="reversed")

    result = await harness.services.verification.verify_by_reference(checkout.reference)

    assert result.status == "FAILED"
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.FAILED
    assert len(await harness.activities(order_id, ActivityKind.VERIFY_FAILED.value)) == 1
    assert (await harness.order(order_id)).status is OrderStatus.PENDING


@pytest.mark.asyncio
async def test_wrong_order_or_unknown_reference(harness):
    order_id, checkout = await _checkout(harness)

    with pytest.raises(PaymentIntentNotFoundException):
        await harness.services.verification.verify_by_reference(checkout.reference, order_id + 1)
    with pytest.raises(PaymentIntentNotFoundException):
        await harness.services.verification.verify_by_reference("NOPE0000")


@pytest.mark.asyncio
async def test_sandbox_auto_approval_estimates_fee(harness):
    order_id = await harness.two_supplier_order()
    services = harness.configure(sandbox_mode=True)
    checkout = await services.checkout.init_checkout(order_id)

    result = await services.verification.verify_by_reference(checkout.reference)

    assert result.status == "PAID"
    intent = await harness.intent(checkout.reference)
    # 3000 * 1.5% + 100
    assert intent.fee_amount == Decimal("145")
    (skipped,) = await harness.activities(order_id, ActivityKind.TRANSFER_SKIPPED.value)
    assert skipped.meta["reason"] == "SANDBOX_MODE"
    assert harness.gateway.transfers == []


@pytest.mark.asyncio
async def test_manual_approval_keeps_bank_transfer_pending(harness):
    order_id = await harness.two_supplier_order()
    services = harness.configure(inline_approval="manual")
    checkout = await services.checkout.init_checkout(order_id, channel="bank_transfer")

    result = await services.verification.verify_by_reference(checkout.reference)

    assert result.status == "PENDING"
    assert result.message == "awaiting approval"
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING
    assert len(await harness.activities(order_id, ActivityKind.AWAITING_APPROVAL.value)) == 1


@pytest.mark.asyncio
async def test_auto_approved_bank_transfer_has_no_gateway_fee(harness):
    order_id = await harness.two_supplier_order()
    checkout = await harness.services.checkout.init_checkout(order_id, channel="bank_transfer")

    result = await harness.services.verification.verify_by_reference(checkout.reference)

    assert result.status == "PAID"
    assert (await harness.intent(checkout.reference)).fee_amount == Decimal("0")


@pytest.mark.asyncio
async def test_webhook_marks_paid(harness, webhook_body):
    _, checkout = await _checkout(harness)
    body = webhook_body(checkout.reference, 300000, fees_minor=7500)

    outcome = await harness.services.verification.handle_webhook(
        {"X-Paystack-Signature": harness.gateway.sign(body)}, body
    )

    assert outcome.processed is True
    assert outcome.reason == "payment verified"
    intent = await harness.intent(checkout.reference)
    assert intent.status is PaymentStatus.PAID
    assert intent.amount == Decimal("3000")
    assert intent.fee_amount == Decimal("75")


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_changes_nothing(harness, webhook_body):
    _, checkout = await _checkout(harness)
    body = webhook_body(checkout.reference, 300000)

    with pytest.raises(PaymentSignatureError):
        await harness.services.verification.handle_webhook({"x-paystack-signature": "deadbeef"}, body)
    with pytest.raises(PaymentSignatureError):
        await harness.services.verification.handle_webhook({}, body)

    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING
    assert await harness.count(FinalizationEventModel) == 0


@pytest.mark.asyncio
async def test_webhook_ignores_other_events_and_unknown_references(harness, webhook_body):
    _, checkout = await _checkout(harness)
    verification = harness.services.verification

    body = webhook_body(checkout.reference, 300000, event="transfer.success")
    ignored = await verification.handle_webhook({"x-paystack-signature": harness.gateway.sign(body)}, body)
    body = webhook_body("UNKNOWN1", 300000)
    unknown = await verification.handle_webhook({"x-paystack-signature": harness.gateway.sign(body)}, body)
    body = b"not json"
    malformed = await verification.handle_webhook({"x-paystack-signature": harness.gateway.sign(body)}, body)

    assert (ignored.processed, ignored.reason) == (False, "ignored_event")
    assert (unknown.processed, unknown.reason) == (False, "unknown_reference")
    assert (malformed.processed, malformed.reason) == (False, "malformed")
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_webhook_channel_switch(harness, webhook_body):
    _, checkout = await _checkout(harness)
    harness.settings.webhook.accept_card = False
    body = webhook_body(checkout.reference, 300000)

    outcome = await harness.services.verification.handle_webhook(
        {"x-paystack-signature": harness.gateway.sign(body)}, body
    )

    assert outcome.reason == "channel_disabled"
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_duplicate_webhook_delivery_is_dropped(harness, webhook_body):
    from infrastructure.adapters.settings_provider import StaticSettlementSettingsProvider
    from infrastructure.bootstrap import build_settlement_services

    services = build_settlement_services(
        harness.uow_factory,
        gateway=harness.gateway,
        lock=harness.lock,
        dispatcher=harness.dispatcher,
        settings_provider=StaticSettlementSettingsProvider(harness.snapshot),
        delivery_cache=MemoryDeliveryCache(),
        settings=harness.settings,
    )
    _, checkout = await _checkout(harness)
    body = webhook_body(checkout.reference, 300000, fees_minor=7500)
    headers = {"x-paystack-signature": harness.gateway.sign(body)}

    first = await services.verification.handle_webhook(headers, body)
    second = await services.verification.handle_webhook(headers, body)

    assert first.processed is True
    assert (second.processed, second.reason) == (False, "duplicate")


@pytest.mark.asyncio
async def test_payment_on_failed_intent_is_not_resurrected(harness, webhook_body):
    _, checkout = await _checkout(harness)
    harness.gateway.fail(checkout.reference)
    await harness.services.verification.verify_by_reference(checkout.reference)
    body = webhook_body(checkout.reference, 300000)

    outcome = await harness.services.verification.handle_webhook(
        {"x-paystack-signature": harness.gateway.sign(body)}, body
    )

    assert outcome.processed is False
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_concurrent_pull_and_push_finalize_once(harness, webhook_body):
    _, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")
    body = webhook_body(checkout.reference, 300000, fees_minor=7500)
    headers = {"x-paystack-signature": harness.gateway.sign(body)}

    pulled, pushed = await asyncio.gather(
        harness.services.verification.verify_by_reference(checkout.reference),
        harness.services.verification.handle_webhook(headers, body),
    )

    assert pulled.status == "PAID"
    assert pushed.reason in ("payment verified", "already verified")
    assert {pulled.message, pushed.reason} == {"payment verified", "already verified"}
    assert await harness.count(
        FinalizationEventModel, payment_id=checkout.payment_id, event_type="FINALIZE_PAID"
    ) == 1
    assert await harness.count(SupplierPaymentAllocationModel, payment_id=checkout.payment_id) == 2


def _services_with(harness, uow_factory=None, **overrides):
    from infrastructure.adapters.settings_provider import StaticSettlementSettingsProvider
    from infrastructure.bootstrap import build_settlement_services

    options = dict(
        gateway=harness.gateway,
        lock=harness.lock,
        dispatcher=harness.dispatcher,
        settings_provider=StaticSettlementSettingsProvider(harness.snapshot),
        settings=harness.settings,
    )
    options.update(overrides)
    return build_settlement_services(uow_factory or harness.uow_factory, **options)


class BusyLock:
    """另一个进程一直持有订单锁"""

    @asynccontextmanager
    async def hold(self, order_id):
        raise TimeoutError(f"获取锁失败: settlement:order:{order_id}")
        yield


@pytest.mark.asyncio
async def test_lock_timeout_during_settlement_reports_pending(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")
    services = _services_with(harness, lock=BusyLock())

    result = await services.verification.verify_by_reference(checkout.reference, order_id)

    assert (result.status, result.message) == ("PENDING", "verification pending")
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING
    assert await harness.events(checkout.payment_id) == []


@pytest.mark.asyncio
async def test_lock_timeout_on_manual_approval_reports_pending(harness):
    order_id = await harness.two_supplier_order()
    harness.configure(inline_approval="manual")
    checkout = await harness.services.checkout.init_checkout(order_id, channel="bank_transfer")
    services = _services_with(harness, lock=BusyLock())

    result = await services.verification.verify_by_reference(checkout.reference)

    assert (result.status, result.message) == ("PENDING", "verification pending")
    assert len(await harness.activities(order_id, ActivityKind.AWAITING_APPROVAL.value)) == 0


@pytest.mark.asyncio
async def test_database_error_while_marking_paid_reports_pending(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "3000", fees="75")

    def read_only_database(*, readonly=False):
        if not readonly:
            raise OperationalError("UPDATE payment_intents", {}, Exception("database is locked"))
        return harness.uow_factory(readonly=True)

    services = _services_with(harness, uow_factory=read_only_database)

    result = await services.verification.verify_by_reference(checkout.reference, order_id)

    assert (result.status, result.message) == ("PENDING", "verification pending")
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING

    # 数据库恢复后，下一次查询正常入账
    recovered = await harness.services.verification.verify_by_reference(checkout.reference, order_id)
    assert recovered.status == "PAID"


@pytest.mark.asyncio
async def test_zero_amount_success_is_not_settled(harness):
    order_id, checkout = await _checkout(harness)
    harness.gateway.succeed(checkout.reference, "0", fees="0")

    result = await harness.services.verification.verify_by_reference(checkout.reference, order_id)

    assert (result.status, result.message) == ("PENDING", "verification pending")
    assert (await harness.intent(checkout.reference)).status is PaymentStatus.PENDING
    assert await harness.count(SupplierPaymentAllocationModel, payment_id=checkout.payment_id) == 0
