"""Detached best-effort tasks that never block or fail the caller."""

import asyncio
from typing import Any, Coroutine

import structlog

logger = structlog.get_logger(__name__)


class DetachedTasks:
    """
    Runs fire-and-forget side effects off the critical path.

    Failures are logged with the task name and swallowed. Strong references
    are kept until each task finishes so the event loop cannot collect them
    mid-flight.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """
        Schedule a coroutine as a detached task.

        Args:
            coro: Coroutine to run
            name: Short label used in log events (e.g. "crm.sync")

        Returns:
            The scheduled task
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("detached_task.cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "detached_task.failed",
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    @property
    def pending(self) -> int:
        """Number of tasks still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight task (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


detached_tasks = DetachedTasks()
