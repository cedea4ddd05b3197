"""Detached background tasks.

Fire-and-forget work (usage persistence, metrics) runs here so the caller
never awaits it. Tasks are strongly referenced until done, and their
failures are logged instead of surfacing as "exception never retrieved".
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """A set of detached tasks with catch-and-log completion handling."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        """Schedule *coro* without awaiting it."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed",
                extra={"task": task.get_name(), "error_type": type(exc).__name__},
                exc_info=exc,
            )

    async def drain(self, timeout_s: float | None = None) -> None:
        """Wait for every pending task (shutdown and tests)."""
        while self._tasks:
            pending = list(self._tasks)
            _, not_done = await asyncio.wait(pending, timeout=timeout_s)
            if not_done:
                logger.warning(
                    "Background tasks still pending after drain timeout",
                    extra={"pending": len(not_done)},
                )
                return
