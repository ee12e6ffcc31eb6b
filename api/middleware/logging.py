"""
请求/响应日志中间件

每个结算请求记录一条开始日志和一条结束日志，并把订单号、支付引用等
结算标识绑定到 structlog 上下文，方便按订单串联 API、结算与任务日志。
网关回调的请求体从不落日志。
"""
import json
import time
from typing import Any, Dict, Optional

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)

# 请求中可用于串联结算日志的标识字段
SETTLEMENT_KEYS = ("order_id", "payment_id", "reference", "payment_key", "allocation_id")

# 付款人和收款账户信息一律脱敏
SENSITIVE_FIELDS = {
    "secret",
    "secret_key",
    "authorization",
    "access_code",
    "email",
    "account_number",
    "bank_account_number",
    "recipient_code",
}


class LoggingMiddleware(BaseHTTPMiddleware):
    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}
    WEBHOOK_PATH_PART = "/webhook/"

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.enable_body_log_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_log_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        is_webhook = self.WEBHOOK_PATH_PART in request.url.path
        body = None if is_webhook else await self._body_snippet(request)

        ids = _settlement_ids(request, body)
        if ids:
            structlog.contextvars.bind_contextvars(**ids)

        info: Dict[str, Any] = {"method": request.method, "path": request.url.path, "webhook": is_webhook}
        if body is not None and self._should_log_body(request):
            info["body"] = _sanitize(body)
        logger.info("request_started", **info)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration=round(time.perf_counter() - start_time, 4),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
                **info,
            )
            raise

        duration = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        self._log_response(response, duration, info)
        return response

    def _should_log_body(self, request: Request) -> bool:
        # X-Log-Body: true/false 可按请求覆盖默认行为
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.enable_body_log_default and settings.DEBUG)

    async def _body_snippet(self, request: Request) -> Optional[Any]:
        if request.method not in ("POST", "PUT", "PATCH"):
            return None
        if "application/json" not in request.headers.get("content-type", "").lower():
            return None
        raw = await request.body()
        if not raw or len(raw) > self.max_body_log_bytes:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def _log_response(self, response: Response, duration: float, info: dict) -> None:
        data = {"status_code": response.status_code, "duration": round(duration, 4), **info}
        data.pop("body", None)
        if response.status_code < 400:
            logger.info("request_completed", **data)
        elif response.status_code < 500:
            logger.warning("request_client_error", **data)
        else:
            logger.error("request_server_error", **data)


def _settlement_ids(request: Request, body: Optional[Any]) -> Dict[str, Any]:
    ids: Dict[str, Any] = {}
    sources = [request.query_params]
    if isinstance(body, dict):
        sources.append(body)
    for source in sources:
        for key in SETTLEMENT_KEYS:
            value = source.get(key)
            if value not in (None, "") and key not in ids:
                ids[key] = value
    return ids


def _sanitize(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: ("***" if k.lower() in SENSITIVE_FIELDS else _sanitize(v)) for k, v in data.items()}
    if isinstance(data, list):
        return [_sanitize(v) for v in data]
    return data
