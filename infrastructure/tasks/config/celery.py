"""Celery application configuration for settlement background work.

Three queues: ``settlement`` (finalize / fan-out / profit, latency sensitive),
``notifications`` (supplier and customer messages) and ``maintenance``
(periodic expiry of stale intents).
"""
from __future__ import annotations

import os

from celery import Celery
from kombu import Queue

from core.config import settings
from core.logging_config import get_logger
from .beat import CELERY_BEAT_SCHEDULE


TASK_PACKAGES = ("infrastructure.tasks.tasks",)

SETTLEMENT_QUEUE = "settlement"
NOTIFICATIONS_QUEUE = "notifications"
MAINTENANCE_QUEUE = "maintenance"

logger = get_logger(__name__)

celery_app = Celery("settlement_core")

celery_app.conf.update(
    broker_url=settings.redis.url or os.getenv("CELERY_BROKER_URL"),
    result_backend=settings.redis.url or os.getenv("CELERY_RESULT_BACKEND"),
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # 任务完成后才 ack：worker 崩溃时结算任务会被重新投递，finalize 本身幂等
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_track_started=True,
    result_expires=3600,
    worker_prefetch_multiplier=1,
    task_default_queue=SETTLEMENT_QUEUE,
    task_default_retry_delay=5,
    task_queues=(
        Queue(SETTLEMENT_QUEUE),
        Queue(NOTIFICATIONS_QUEUE),
        Queue(MAINTENANCE_QUEUE),
    ),
    task_routes={
        "settlement.expire_pending_intents": {"queue": MAINTENANCE_QUEUE},
        "settlement.*": {"queue": SETTLEMENT_QUEUE},
        "notifications.*": {"queue": NOTIFICATIONS_QUEUE},
    },
    beat_schedule=CELERY_BEAT_SCHEDULE,
    imports=TASK_PACKAGES,
)

# 开发/测试环境不依赖 broker，任务在进程内执行
if (settings.ENVIRONMENT or "production").lower() in {"development", "dev", "test", "testing"}:
    celery_app.conf.task_always_eager = True

celery_app.autodiscover_tasks(packages=TASK_PACKAGES)


@celery_app.on_after_configure.connect
def _log_configuration(sender, **kwargs):
    logger.info(
        "celery_configured",
        broker=sender.conf.broker_url,
        eager=bool(sender.conf.task_always_eager),
        queues=[q.name for q in sender.conf.task_queues],
    )
