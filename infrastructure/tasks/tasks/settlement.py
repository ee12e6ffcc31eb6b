"""Settlement Celery tasks: deferred finalization, fan-out, profit and TTL expiry.

Every task builds its own services on a task-scoped engine; finalization is
idempotent, so autoretry is safe.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from celery import shared_task

from core.logging_config import get_logger
from infrastructure.bootstrap import SettlementServices, build_default_services
from infrastructure.database import create_worker_session_factory
from infrastructure.external.cache import open_redis_client, redis_configured
from ..utils.base_task import BaseTask, run_async

logger = get_logger(__name__)

_RETRY_OPTIONS = dict(
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)


@asynccontextmanager
async def task_services() -> AsyncIterator[SettlementServices]:
    engine, session_factory = create_worker_session_factory()
    redis = await open_redis_client() if redis_configured() else None
    services = build_default_services(session_factory=session_factory, redis=redis)
    try:
        yield services
    finally:
        await services.aclose()
        if redis is not None:
            await redis.aclose()
        await engine.dispose()


@shared_task(name="settlement.finalize", **_RETRY_OPTIONS)
def finalize_payment(self, payment_id: int) -> dict:
    async def _run():
        async with task_services() as services:
            return await services.finalizer.finalize(payment_id)

    report = run_async(_run)
    logger.info(
        "finalize_task_completed",
        payment_id=payment_id,
        core_executed=report.core_executed,
        failed=report.failed,
        pending=report.pending,
    )
    return report.model_dump()


@shared_task(name="settlement.fan_out", **_RETRY_OPTIONS)
def fan_out_payment(self, payment_id: int) -> dict:
    """Deferred fan-out: create purchase orders and allocations, then finish finalization."""
    async def _run():
        async with task_services() as services:
            fanout = await services.finalizer.fan_out_for_payment(payment_id)
            if fanout.failed:
                raise RuntimeError(f"fan-out failed for payment {payment_id}")
            return await services.finalizer.finalize(payment_id)

    return run_async(_run).model_dump()


@shared_task(name="settlement.recompute_profit", **_RETRY_OPTIONS)
def recompute_profit(self, payment_id: int) -> dict:
    async def _run():
        async with task_services() as services:
            return await services.profits.recompute(payment_id)

    return run_async(_run).model_dump()


@shared_task(name="settlement.expire_pending_intents", bind=True, base=BaseTask)
def expire_pending_intents(self) -> int:
    async def _run():
        async with task_services() as services:
            return await services.checkout.expire_pending()

    return run_async(_run)
