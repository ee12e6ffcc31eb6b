"""
Task dispatcher port: hands work to the deferred-work boundary.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class TaskDispatcher(Protocol):
    """Enqueue a named task.

    Implementations raise when the task could not be handed off, so callers
    can leave their guard event unwritten and retry later.
    """

    def dispatch(
        self,
        name: str,
        *,
        args: Optional[list[Any]] = None,
        kwargs: Optional[dict[str, Any]] = None,
        countdown: Optional[int] = None,
    ) -> Optional[str]: ...
