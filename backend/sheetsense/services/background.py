"""
Detached background work for the request/response cycle.
"""

import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)


class BackgroundTaskRunner:
    """
    Runs coroutines detached from the caller.

    Holds a strong reference to every running task so the event loop cannot
    garbage-collect it midway; failures are logged when the task finishes.
    No retries and no cancellation; drain() waits for everything in flight.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, name: str = "") -> asyncio.Task:
        task = asyncio.create_task(coro, name=name or None)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"⚠️  Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"❌ Background task {task.get_name()} failed: {error}", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for all in-flight tasks (shutdown and tests)."""
        while True:
            in_flight = [task for task in self._tasks if not task.done()]
            if not in_flight:
                break
            await asyncio.gather(*in_flight, return_exceptions=True)
