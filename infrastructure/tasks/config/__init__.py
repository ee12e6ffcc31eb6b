"""Celery app, queue names and the periodic schedule."""
from .celery import MAINTENANCE_QUEUE, NOTIFICATIONS_QUEUE, SETTLEMENT_QUEUE, celery_app
from .beat import CELERY_BEAT_SCHEDULE

__all__ = [
    "celery_app",
    "CELERY_BEAT_SCHEDULE",
    "SETTLEMENT_QUEUE",
    "NOTIFICATIONS_QUEUE",
    "MAINTENANCE_QUEUE",
]
