"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import hashlib
import hmac
import os
import tempfile
from dataclasses import dataclass, field
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

_TMP_DIR = tempfile.mkdtemp(prefix="settlement-tests-")

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DATABASE__URL", f"sqlite+aiosqlite:///{_TMP_DIR}/app.db")
os.environ.setdefault("PAYSTACK__SECRET_KEY", "sk_test_secret")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event, func, select  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from application.dtos.payments import (  # noqa: E402
    ChargeSession,
    SplitResult,
    TransactionVerification,
    TransferResult,
)
from application.ports.settings_provider import SettlementSnapshot  # noqa: E402
from core.settings import PaymentSettings, SettlementSettings  # noqa: E402
from domain.settlement.profit import ProfitMode  # noqa: E402
from infrastructure.adapters.settings_provider import StaticSettlementSettingsProvider  # noqa: E402
from infrastructure.adapters.settlement_lock import LocalSettlementLock  # noqa: E402
from infrastructure.bootstrap import SettlementServices, build_settlement_services  # noqa: E402
from infrastructure.models import (  # noqa: E402
    Base,
    OperatorSettingModel,
    OrderItemModel,
    OrderModel,
    SupplierModel,
    SupplierOfferModel,
)
from infrastructure.unit_of_work import uow_factory as make_uow_factory  # noqa: E402


TEST_SECRET = "sk_test_secret"
ADMIN_KEY = "test-admin-key"


class FakeGateway:
    """In-memory stand-in for the hosted-checkout provider."""

    provider = "paystack"

    def __init__(self, secret: str = TEST_SECRET):
        self.secret = secret
        self.verifications: Dict[str, Any] = {}
        self.initialized: List[Any] = []
        self.splits: List[Any] = []
        self.recipients: List[Any] = []
        self.transfers: List[Any] = []
        self.transfer_error: Optional[Exception] = None
        self.closed = False

    def succeed(self, reference: str, amount: str, fees: Optional[str] = None, **extra) -> None:
        self.verifications[reference] = TransactionVerification(
            reference=extra.pop("reported_reference", reference),
            status="success",
            provider_status="success",
            amount=Decimal(amount),
            fees=Decimal(fees) if fees is not None else None,
            currency=extra.pop("currency", "NGN"),
            channel=extra.pop("channel", "card"),
            card_country=extra.pop("card_country", "NG"),
            raw={"reference": reference, "status": "success"},
        )

    def fail(self, reference: str, provider_status: str = "failed") -> None:
        self.verifications[reference] = TransactionVerification(
            reference=reference,
            status="failed",
            provider_status=provider_status,
            amount=Decimal("0"),
            raw={"reference": reference, "status": provider_status},
        )

    def sign(self, raw_body: bytes) -> str:
        return hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()

    async def initialize_charge(self, req):
        self.initialized.append(req)
        return ChargeSession(
            reference=req.reference,
            authorization_url=f"https://checkout.test/{req.reference}",
            access_code=f"ac_{req.reference}",
            raw={"reference": req.reference},
        )

    async def verify_transaction(self, reference: str):
        result = self.verifications.get(reference)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return TransactionVerification(
                reference=reference, status="pending", provider_status="ongoing", amount=Decimal("0")
            )
        return result

    async def create_split(self, req):
        self.splits.append(req)
        return SplitResult(split_code=f"SPL_{len(self.splits)}", raw={})

    async def create_transfer_recipient(self, req):
        self.recipients.append(req)
        return f"RCP_{req.account_number}"

    async def execute_transfer(self, req):
        if self.transfer_error is not None:
            raise self.transfer_error
        self.transfers.append(req)
        return TransferResult(reference=req.reference, status="success", transfer_code=f"TRF_{len(self.transfers)}")

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(raw_body), signature)

    async def aclose(self) -> None:
        self.closed = True


class RecordingDispatcher:
    def __init__(self):
        self.calls: List[SimpleNamespace] = []
        self.fail = False

    def dispatch(self, name, *, args=None, kwargs=None, countdown=None):
        if self.fail:
            raise RuntimeError("broker unavailable")
        self.calls.append(SimpleNamespace(name=name, args=args or [], kwargs=kwargs or {}, countdown=countdown))
        return f"task-{len(self.calls)}"

    def names(self) -> List[str]:
        return [c.name for c in self.calls]


def _sqlite_transactions(engine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINTs behave on aiosqlite."""

    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")


@dataclass
class Harness:
    session_factory: Any
    gateway: FakeGateway
    dispatcher: RecordingDispatcher
    lock: LocalSettlementLock
    settings: PaymentSettings
    snapshot: SettlementSnapshot
    uow_factory: Any = None
    services: Optional[SettlementServices] = None
    _gateway_enabled: bool = field(default=True)

    def build(self, *, gateway_enabled: bool = True) -> SettlementServices:
        self.uow_factory = make_uow_factory(self.session_factory)
        self._gateway_enabled = gateway_enabled
        self.services = build_settlement_services(
            self.uow_factory,
            gateway=self.gateway if gateway_enabled else None,
            lock=self.lock,
            dispatcher=self.dispatcher,
            settings_provider=StaticSettlementSettingsProvider(self.snapshot),
            settings=self.settings,
        )
        return self.services

    def configure(self, snapshot: Optional[SettlementSnapshot] = None, **settlement) -> SettlementServices:
        """Rebuild services with different settlement switches or operator values."""
        if settlement:
            self.settings = PaymentSettings(settlement=SettlementSettings(**settlement))
        if snapshot is not None:
            self.snapshot = snapshot
        return self.build(gateway_enabled=self._gateway_enabled)

    # ---- seeding ----

    async def add_supplier(self, name: str, **fields) -> int:
        async with self.session_factory() as session:
            supplier = SupplierModel(name=name, is_active=fields.pop("is_active", True), **fields)
            session.add(supplier)
            await session.commit()
            return supplier.id

    async def add_order(
        self,
        lines: List[dict],
        *,
        service_fee: str = "0",
        total: Optional[str] = None,
        email: Optional[str] = "buyer@example.com",
    ) -> int:
        subtotal = sum(
            (Decimal(str(ln["unit_price"])) * max(1, ln.get("quantity", 1)) for ln in lines),
            Decimal("0"),
        )
        fee = Decimal(service_fee)
        async with self.session_factory() as session:
            order = OrderModel(
                status="PENDING",
                subtotal=subtotal,
                service_fee=fee,
                total=Decimal(total) if total is not None else subtotal + fee,
                customer_email=email,
                customer_name="Ada Buyer",
                customer_phone="+2348000000000",
            )
            session.add(order)
            await session.flush()
            for index, line in enumerate(lines, start=1):
                session.add(OrderItemModel(
                    order_id=order.id,
                    product_id=line.get("product_id", index),
                    variant_id=line.get("variant_id"),
                    title=line.get("title", f"Item {index}"),
                    quantity=line.get("quantity", 1),
                    unit_price=Decimal(str(line["unit_price"])),
                    chosen_supplier_id=line.get("supplier_id"),
                    chosen_supplier_unit_price=(
                        Decimal(str(line["supplier_price"])) if line.get("supplier_price") is not None else None
                    ),
                ))
            await session.commit()
            return order.id

    async def add_offer(self, supplier_id: int, product_id: int, price: str, variant_id: Optional[int] = None) -> None:
        async with self.session_factory() as session:
            session.add(SupplierOfferModel(
                supplier_id=supplier_id, product_id=product_id, variant_id=variant_id, price=Decimal(price)
            ))
            await session.commit()

    async def add_setting(self, key: str, value: str) -> None:
        async with self.session_factory() as session:
            session.add(OperatorSettingModel(key=key, value=value))
            await session.commit()

    async def two_supplier_order(self, **supplier_fields) -> int:
        """Supplier A costs 1000, supplier B costs 1500; customer pays 2800 + 200 service fee."""
        a = await self.add_supplier("Alpha Foods", email="alpha@example.com", **supplier_fields)
        b = await self.add_supplier("Beta Farms", email="beta@example.com", **supplier_fields)
        return await self.add_order(
            [
                {"unit_price": "1200", "supplier_id": a, "supplier_price": "1000"},
                {"unit_price": "800", "quantity": 2, "supplier_id": b, "supplier_price": "750"},
            ],
            service_fee="200",
        )

    # ---- queries ----

    async def count(self, model, **filters) -> int:
        async with self.session_factory() as session:
            query = select(func.count()).select_from(model)
            for name, value in filters.items():
                query = query.where(getattr(model, name) == value)
            return (await session.execute(query)).scalar_one()

    async def intent(self, reference: str):
        async with self.uow_factory(readonly=True) as uow:
            return await uow.payment_intents.get_by_reference(reference)

    async def order(self, order_id: int):
        async with self.uow_factory(readonly=True) as uow:
            return await uow.orders.get_by_id(order_id)

    async def events(self, payment_id: int) -> List[str]:
        async with self.uow_factory(readonly=True) as uow:
            return [e.event_type.value for e in await uow.finalization_events.list_for_payment(payment_id)]

    async def purchase_orders(self, order_id: int):
        async with self.uow_factory(readonly=True) as uow:
            return await uow.purchase_orders.list_for_order(order_id)

    async def allocations(self, payment_id: int):
        async with self.uow_factory(readonly=True) as uow:
            return await uow.allocations.list_for_payment(payment_id)

    async def activities(self, order_id: int, kind: str):
        async with self.uow_factory(readonly=True) as uow:
            return await uow.order_activities.list_by_kind(order_id, kind)


def default_snapshot(**overrides) -> SettlementSnapshot:
    values = {"profit_mode": ProfitMode.ACCURATE, "base_fee": Decimal("0"), "comms_unit_cost": Decimal("0")}
    values.update(overrides)
    return SettlementSnapshot(**values)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    _sqlite_transactions(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def harness(session_factory) -> Harness:
    h = Harness(
        session_factory=session_factory,
        gateway=FakeGateway(),
        dispatcher=RecordingDispatcher(),
        lock=LocalSettlementLock(blocking_timeout=5),
        settings=PaymentSettings(settlement=SettlementSettings()),
        snapshot=default_snapshot(),
    )
    h.build()
    return h


@pytest.fixture
def webhook_body():
    import json

    def _build(reference: str, amount_minor: int, *, event: str = "charge.success", fees_minor=None, **data) -> bytes:
        payload = {"reference": reference, "amount": amount_minor, "currency": "NGN", "channel": "card", **data}
        if fees_minor is not None:
            payload["fees"] = fees_minor
        return json.dumps({"event": event, "data": payload}).encode("utf-8")

    return _build
