"""
管理端API路由 - 重跑结算、重算利润、强制标记供应商分配已付

所有接口要求请求头 X-Admin-Key。
"""
from typing import Optional

from fastapi import APIRouter, Depends, Path

from api.dependencies import get_settlement_services, require_admin
from application.dtos.settlement import (
    AllocationDTO,
    FinalizationReport,
    MarkAllocationPaidRequest,
    ProfitBreakdownDTO,
)
from core.logging_config import get_logger
from core.response import Response as ApiResponse, success_response
from infrastructure.bootstrap import SettlementServices

router = APIRouter(
    prefix="/admin",
    tags=["管理端"],
)
logger = get_logger(__name__)


@router.post(
    "/payments/{payment_id}/finalize",
    summary="重跑支付结算",
    response_model=ApiResponse[FinalizationReport],
)
async def finalize_payment(
    payment_id: int = Path(..., gt=0),
    admin: str = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    """
    重新执行结算（幂等）

    已完成的步骤会被跳过，失败或未完成的副作用会被重试。
    """
    report = await services.finalizer.finalize(payment_id)
    logger.info("admin_finalize_requested", payment_id=payment_id, admin=admin)
    return success_response(data=report, message="finalize executed")


@router.post(
    "/payments/{payment_id}/profit",
    summary="重算利润",
    response_model=ApiResponse[ProfitBreakdownDTO],
)
async def recompute_profit(
    payment_id: int = Path(..., gt=0),
    admin: str = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    breakdown = await services.profits.recompute(payment_id)
    return success_response(data=breakdown, message="profit recomputed")


@router.post(
    "/payouts/allocations/{allocation_id}/mark-paid",
    summary="强制标记供应商分配已付",
    response_model=ApiResponse[AllocationDTO],
)
async def mark_allocation_paid(
    allocation_id: int = Path(..., gt=0),
    payload: Optional[MarkAllocationPaidRequest] = None,
    admin: str = Depends(require_admin),
    services: SettlementServices = Depends(get_settlement_services),
):
    """
    - **create_ledger**: 同时记一笔供应商台账 CREDIT（同一分配至多一条）
    - **note**: 备注
    """
    payload = payload or MarkAllocationPaidRequest()
    allocation = await services.admin.mark_allocation_paid(
        allocation_id,
        create_ledger=payload.create_ledger,
        note=payload.note,
        admin_id=admin,
    )
    return success_response(data=allocation, message="allocation marked paid")
