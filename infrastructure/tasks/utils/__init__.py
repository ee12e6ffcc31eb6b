"""Utility helpers for Celery tasks."""
from .dispatcher import CeleryTaskDispatcher
from .base_task import BaseTask, run_async

__all__ = ["CeleryTaskDispatcher", "BaseTask", "run_async"]
