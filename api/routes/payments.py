"""
Payments API routes.

Checkout, pull verification, the signed gateway webhook, status and receipt
lookups. Keep this thin: every rule lives in the settlement services.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.dependencies import AdminKey, get_settlement_services
from application.dtos.settlement import (
    CheckoutResult,
    InitPaymentRequest,
    PaymentStatusDTO,
    ReceiptDTO,
    VerificationResult,
    VerifyPaymentRequest,
)
from core.logging_config import get_logger
from core.response import Response as ApiResponse, exception_response, success_response
from infrastructure.bootstrap import SettlementServices
from infrastructure.external.payments.exceptions import PaymentSignatureError


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


@router.post("/init", summary="Initialise checkout", response_model=ApiResponse[CheckoutResult])
async def init_payment(
    payload: InitPaymentRequest,
    services: SettlementServices = Depends(get_settlement_services),
):
    result = await services.checkout.init_checkout(payload.order_id, payload.channel, payload.email)
    return success_response(data=result, message="checkout initialised")


@router.post("/verify", summary="Verify payment", response_model=ApiResponse[VerificationResult])
async def verify_payment(
    payload: VerifyPaymentRequest,
    services: SettlementServices = Depends(get_settlement_services),
):
    result = await services.verification.verify_by_reference(payload.reference, order_id=payload.order_id)
    return success_response(data=result, message=result.message)


@router.post(
    "/{reference}/verify",
    summary="Re-verify payment (admin)",
    response_model=ApiResponse[VerificationResult],
    dependencies=[AdminKey],
)
async def admin_verify_payment(
    reference: str,
    services: SettlementServices = Depends(get_settlement_services),
):
    result = await services.verification.verify_by_reference(reference)
    return success_response(data=result, message=result.message)


@router.post("/webhook/paystack", summary="Paystack webhook")
async def paystack_webhook(
    request: Request,
    services: SettlementServices = Depends(get_settlement_services),
):
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    try:
        outcome = await services.verification.handle_webhook(headers, raw_body)
    except PaymentSignatureError as exc:
        response = exception_response(exc, request_id=getattr(request.state, "request_id", None))
        return JSONResponse(status_code=401, content=response.model_dump(mode="json"))
    except Exception as exc:
        # 验签通过后一律 200 应答
        logger.exception("webhook_processing_failed", error=str(exc))
        return success_response(data={"processed": False, "reason": "error"}, message="received")
    return success_response(data=outcome, message="received")


@router.get("/status", summary="Payment status", response_model=ApiResponse[PaymentStatusDTO])
async def payment_status(
    order_id: int = Query(..., gt=0),
    reference: Optional[str] = Query(default=None, max_length=64),
    services: SettlementServices = Depends(get_settlement_services),
):
    result = await services.checkout.get_status(order_id, reference)
    return success_response(data=result, message=result.status)


@router.get("/{payment_key}/receipt", summary="Payment receipt", response_model=ApiResponse[ReceiptDTO])
async def payment_receipt(
    payment_key: str,
    services: SettlementServices = Depends(get_settlement_services),
):
    receipt = await services.receipts.get_receipt(payment_key)
    return success_response(data=receipt, message=receipt.receipt_no)
