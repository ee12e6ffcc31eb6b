"""Common base task for Celery jobs"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog
from celery import Task

from core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class BaseTask(Task):
    """Unified lifecycle logging; every log line carries the task and originating request ids."""

    def __call__(self, *args, **kwargs):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            task_name=self.name,
            task_id=self.request.id,
            request_id=getattr(self.request, "x_request_id", None),
        )
        return super().__call__(*args, **kwargs)

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        """Emit a structured error message before the default Celery handling."""
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            args=args,
            kwargs=kwargs,
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        logger.warning(
            "celery_task_retry",
            task_id=task_id,
            task_name=self.name,
            retries=self.request.retries,
            exc=str(exc),
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval, task_id, args, kwargs):  # type: ignore[override]
        """Log a success event so operators can trace normal execution."""
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
        )
        super().on_success(retval, task_id, args, kwargs)


def run_async(fn: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine function to completion on a fresh event loop (one per task)."""
    return asyncio.run(fn())
