"""
Detached work scheduled after a response has been sent.

The event loop only keeps weak references to tasks, so a fire-and-forget
coroutine can be garbage collected mid-flight. :class:`PostResponseTasks`
holds a strong reference until each task finishes and logs any exception
that escaped it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

_log = structlog.get_logger(__name__)


class PostResponseTasks:
    """Registry of in-flight post-response tasks."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error(
                "post_response_task_failed",
                task=task.get_name(),
                error=str(exc),
                exc_info=exc,
            )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for every pending task. Tasks still running after ``timeout`` are cancelled."""
        while self._tasks:
            pending = list(self._tasks)
            _, still_pending = await asyncio.wait(pending, timeout=timeout)
            if still_pending:
                _log.warning("post_response_tasks_cancelled", count=len(still_pending))
                for task in still_pending:
                    task.cancel()
                await asyncio.gather(*still_pending, return_exceptions=True)
                return
