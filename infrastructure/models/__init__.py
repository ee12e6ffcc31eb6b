"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import (
    OrderModel,
    OrderItemModel,
    SupplierModel,
    SupplierOfferModel,
    OrderActivityModel,
    OrderCommsModel,
    OperatorSettingModel,
)
from .payment import PaymentIntentModel, FinalizationEventModel
from .settlement import (
    PurchaseOrderModel,
    PurchaseOrderItemModel,
    SupplierPaymentAllocationModel,
    SupplierLedgerEntryModel,
    ProfitBreakdownModel,
)

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "OrderItemModel",
    "SupplierModel",
    "SupplierOfferModel",
    "OrderActivityModel",
    "OrderCommsModel",
    "OperatorSettingModel",
    "PaymentIntentModel",
    "FinalizationEventModel",
    "PurchaseOrderModel",
    "PurchaseOrderItemModel",
    "SupplierPaymentAllocationModel",
    "SupplierLedgerEntryModel",
    "ProfitBreakdownModel",
]
