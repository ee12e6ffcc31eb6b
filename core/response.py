"""
统一响应格式定义

所有接口返回 {code, message, data, error}；金额在 data 中以字符串出现，
时间统一为 UTC ISO8601（Z 结尾）。
"""
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, field_serializer

from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode


T = TypeVar("T")


def utc_isoformat(ts: datetime) -> str:
    """naive 时间按 UTC 处理"""
    ts = ts.replace(tzinfo=timezone.utc) if ts.tzinfo is None else ts.astimezone(timezone.utc)
    return ts.isoformat().replace("+00:00", "Z")


class ErrorDetail(BaseModel):
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("timestamp")
    def serialize_timestamp(self, timestamp: datetime) -> str:
        return utc_isoformat(timestamp)


class Response(BaseModel, Generic[T]):
    """统一响应模型"""
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


def success_response(data: Any = None, message: str = "Success", code: int = BusinessCode.SUCCESS) -> Response:
    return Response(code=code, message=message, data=data, error=None)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """
    创建错误响应

    Args:
        code: 业务状态码（见 shared.codes）
        message: 错误消息
        error_type: 错误类型，如 OrderNotFound / PaymentSignatureError
        details: 错误详情（网关错误带 provider / http_status）
        field: 出错的请求字段
        request_id: 请求ID
    """
    return Response(
        code=code,
        message=message,
        data=None,
        error=ErrorDetail(type=error_type, details=details, field=field, request_id=request_id),
    )


def exception_response(exc: BusinessException, request_id: Optional[str] = None) -> Response:
    """业务异常（含网关与验签错误）转换为统一错误响应"""
    return error_response(
        code=exc.code,
        message=exc.message,
        error_type=exc.error_type,
        details=exc.details,
        field=exc.field,
        request_id=request_id,
    )
