"""Celery-backed implementation of the application TaskDispatcher port."""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Dict, List, Optional, Set

import structlog
from celery import Celery

from application.ports.task_dispatcher import TaskDispatcher
from core.logging_config import get_logger
from ..config.celery import celery_app


logger = get_logger(__name__)


def _trace_headers() -> Dict[str, str]:
    # 把当前请求的 request_id 带进任务，worker 侧由 BaseTask 重新绑定
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    return {"x_request_id": request_id} if request_id else {}


class CeleryTaskDispatcher(TaskDispatcher):
    """Schedules tasks by name so callers never import task modules."""

    def __init__(self, app: Optional[Celery] = None) -> None:
        self._app = app or celery_app
        # eager 模式下仍在线程池里执行的任务
        self._inflight: Set[asyncio.Future] = set()

    def dispatch(
        self,
        name: str,
        *,
        args: Optional[List[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
        countdown: Optional[int] = None,
    ) -> Optional[str]:
        try:
            if self._app.conf.task_always_eager:
                return self._run_eager(name, args or [], kwargs or {})
            result = self._app.send_task(
                name,
                args=args or [],
                kwargs=kwargs or {},
                countdown=countdown,
                headers=_trace_headers(),
            )
        except Exception as exc:
            logger.error("task_dispatch_failed", task_name=name, error=str(exc))
            raise
        logger.info("task_dispatched", task_name=name, task_id=result.id, countdown=countdown)
        return result.id

    def _run_eager(self, name: str, args: List[Any], kwargs: Dict[str, Any]) -> Optional[str]:
        # send_task ignores task_always_eager; run registered tasks locally instead
        self._app.loader.import_default_modules()
        task = self._app.tasks[name]
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            result = task.apply(args=args, kwargs=kwargs)
            if result.failed():
                logger.error("task_failed_eager", task_name=name, task_id=result.id, error=str(result.result))
            return result.id
        # Called from async code: run on a worker thread so the task gets its own event loop
        future = loop.run_in_executor(None, partial(task.apply, args=args, kwargs=kwargs))
        self._inflight.add(future)
        future.add_done_callback(partial(self._eager_done, name))
        logger.info("task_dispatched_eager", task_name=name)
        return None

    def _eager_done(self, name: str, future: asyncio.Future) -> None:
        self._inflight.discard(future)
        if future.cancelled():
            logger.warning("task_cancelled_eager", task_name=name)
            return
        error = future.exception()
        if error is None:
            result = future.result()
            if not result.failed():
                return
            error = result.result
        logger.error("task_failed_eager", task_name=name, error=str(error))
