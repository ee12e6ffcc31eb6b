"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
        message_key: Optional[str] = None,
        format_params: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        self.message_key = message_key
        self.format_params = format_params
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
        message_key: str | None = None,
        format_params: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
            message_key=message_key or "validation.domain",
            format_params=format_params,
        )


class InvalidStateTransitionException(BusinessException):
    """状态机不允许的迁移（终态不可离开等）"""

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            code=BusinessCode.INVALID_STATE_TRANSITION,
            message=f"{entity} 无法从 {current} 转换为 {target}",
            error_type="InvalidStateTransition",
            details={"entity": entity, "current": current, "target": target},
            field="status",
        )


class OrderNotFoundException(BusinessException):
    def __init__(self, order_id: Optional[int] = None):
        super().__init__(
            code=BusinessCode.ORDER_NOT_FOUND,
            message="Order not found",
            error_type="OrderNotFound",
            details={"order_id": order_id} if order_id is not None else None,
            message_key="order.not_found",
        )


class PaymentIntentNotFoundException(BusinessException):
    def __init__(self, *, reference: Optional[str] = None, payment_id: Optional[int] = None):
        details = {}
        if reference is not None:
            details["reference"] = reference
        if payment_id is not None:
            details["payment_id"] = payment_id
        super().__init__(
            code=BusinessCode.PAYMENT_INTENT_NOT_FOUND,
            message="Payment intent not found",
            error_type="PaymentIntentNotFound",
            details=details or None,
            message_key="payment.intent.not_found",
        )


class PaymentConflictException(BusinessException):
    """订单已存在成功支付，禁止再次发起"""

    def __init__(self, order_id: int, reference: Optional[str] = None):
        super().__init__(
            code=BusinessCode.PAYMENT_CONFLICT,
            message=f"订单 {order_id} 已支付",
            error_type="PaymentConflict",
            details={"order_id": order_id, "reference": reference},
            message_key="payment.already_paid",
        )


class ReferenceMismatchException(BusinessException):
    """网关返回的交易引用与本地引用不一致（不可重试）"""

    def __init__(self, expected: str, received: Optional[str]):
        super().__init__(
            code=BusinessCode.REFERENCE_MISMATCH,
            message="Gateway reference does not match payment intent",
            error_type="ReferenceMismatch",
            details={"expected": expected, "received": received},
            message_key="payment.reference.mismatch",
        )


class ReferenceExhaustedException(BusinessException):
    """引用码多次冲突后放弃"""

    def __init__(self, kind: str, attempts: int):
        super().__init__(
            code=BusinessCode.REFERENCE_EXHAUSTED,
            message=f"无法生成唯一的 {kind}（已尝试 {attempts} 次）",
            error_type="ReferenceExhausted",
            details={"kind": kind, "attempts": attempts},
        )


class AllocationNotFoundException(BusinessException):
    def __init__(self, allocation_id: Optional[int] = None):
        super().__init__(
            code=BusinessCode.ALLOCATION_NOT_FOUND,
            message="Supplier allocation not found",
            error_type="AllocationNotFound",
            details={"allocation_id": allocation_id} if allocation_id is not None else None,
            message_key="allocation.not_found",
        )


class ReferenceCollisionError(Exception):
    """唯一引用码冲突（仓储在唯一约束冲突时抛出，供有限次重试使用）。

    仅在领域内部流转，不映射为 HTTP 响应。
    """

    def __init__(self, code: str, *, constraint: Optional[str] = None):
        self.code = code
        self.constraint = constraint
        super().__init__(f"reference collision: {code}")
