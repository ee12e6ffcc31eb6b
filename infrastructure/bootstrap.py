"""
Composition root for the settlement services.

The API builds one ``SettlementServices`` per process (lifespan) so the
in-process settlement lock and the operator settings cache are shared across
requests; every Celery task builds its own on a task-scoped engine.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from application.ports.idempotency import DeliveryCache
from application.ports.payment_gateway import PaymentGateway
from application.ports.settings_provider import SettlementSettingsProvider
from application.ports.settlement_lock import SettlementLock
from application.ports.task_dispatcher import TaskDispatcher
from application.services.admin_payout_service import AdminPayoutService
from application.services.checkout_service import CheckoutService
from application.services.finalization_service import FinalizationService
from application.services.notification_service import NotificationService
from application.services.payout_service import PayoutService
from application.services.profit_service import ProfitService
from application.services.receipt_service import ReceiptService
from application.services.verification_service import VerificationService
from core.config import settings as app_settings
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.adapters.delivery_cache import RedisDeliveryCache
from infrastructure.adapters.settings_provider import DatabaseSettlementSettingsProvider
from infrastructure.adapters.settlement_lock import LocalSettlementLock, RedisSettlementLock
from infrastructure.external.cache import RedisClient
from infrastructure.external.payments import get_payment_gateway
from infrastructure.tasks.utils.dispatcher import CeleryTaskDispatcher
from infrastructure.unit_of_work import uow_factory as make_uow_factory


logger = get_logger(__name__)


@dataclass
class SettlementServices:
    checkout: CheckoutService
    verification: VerificationService
    finalizer: FinalizationService
    payouts: PayoutService
    receipts: ReceiptService
    profits: ProfitService
    notifications: NotificationService
    admin: AdminPayoutService
    gateway: Optional[PaymentGateway] = None

    async def aclose(self) -> None:
        close = getattr(self.gateway, "aclose", None)
        if callable(close):
            await close()


def build_settlement_services(
    uow_factory: Callable[..., AbstractUnitOfWork],
    *,
    gateway: Optional[PaymentGateway],
    lock: SettlementLock,
    dispatcher: TaskDispatcher,
    settings_provider: SettlementSettingsProvider,
    delivery_cache: Optional[DeliveryCache] = None,
    settings: Optional[PaymentSettings] = None,
) -> SettlementServices:
    settings = settings or payment_settings
    notifications = NotificationService(uow_factory, dispatcher=dispatcher, settings_provider=settings_provider)
    payouts = PayoutService(uow_factory, gateway=gateway, settings=settings)
    receipts = ReceiptService(uow_factory, lock=lock, settings=settings)
    profits = ProfitService(uow_factory, settings_provider=settings_provider, lock=lock)
    finalizer = FinalizationService(
        uow_factory,
        lock=lock,
        dispatcher=dispatcher,
        payouts=payouts,
        receipts=receipts,
        profits=profits,
        notifications=notifications,
        settings=settings,
    )
    verification = VerificationService(
        uow_factory,
        gateway=gateway,
        finalizer=finalizer,
        lock=lock,
        dispatcher=dispatcher,
        settings_provider=settings_provider,
        delivery_cache=delivery_cache,
        settings=settings,
    )
    return SettlementServices(
        checkout=CheckoutService(uow_factory, gateway=gateway, lock=lock, settings=settings),
        verification=verification,
        finalizer=finalizer,
        payouts=payouts,
        receipts=receipts,
        profits=profits,
        notifications=notifications,
        admin=AdminPayoutService(uow_factory, lock=lock, settings=settings),
        gateway=gateway,
    )


def default_gateway() -> Optional[PaymentGateway]:
    """配置了网关密钥时返回网关客户端，否则为 None（沙箱/线下转账仍可用）"""
    if not payment_settings.paystack.secret_key:
        logger.warning("payment_gateway_not_configured", provider=payment_settings.default_provider)
        return None
    return get_payment_gateway()


def build_default_services(
    *,
    session_factory=None,
    redis: Optional[RedisClient] = None,
    gateway: Optional[PaymentGateway] = None,
    dispatcher: Optional[TaskDispatcher] = None,
) -> SettlementServices:
    factory = make_uow_factory(session_factory) if session_factory is not None else make_uow_factory()
    if redis is not None:
        lock: SettlementLock = RedisSettlementLock(
            redis,
            timeout=app_settings.SETTLEMENT_LOCK_TIMEOUT,
            blocking_timeout=app_settings.SETTLEMENT_LOCK_BLOCKING_TIMEOUT,
        )
        delivery_cache: Optional[DeliveryCache] = RedisDeliveryCache(redis)
    else:
        lock = LocalSettlementLock(blocking_timeout=app_settings.SETTLEMENT_LOCK_BLOCKING_TIMEOUT)
        delivery_cache = None

    return build_settlement_services(
        factory,
        gateway=gateway if gateway is not None else default_gateway(),
        lock=lock,
        dispatcher=dispatcher or CeleryTaskDispatcher(),
        settings_provider=DatabaseSettlementSettingsProvider(factory, payment_settings.settlement),
        delivery_cache=delivery_cache,
    )
