"""Tracked fire-and-forget work with failure isolation."""
import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundWork:
    """
    Run best-effort coroutines detached from the request that started them.

    Tasks are kept referenced until they finish; failures are logged here and
    never propagate to the submitter.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, name: str, work: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(work)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Background task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background task {task.get_name()} failed: {error!r}", exc_info=error)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for all submitted work to finish, e.g. before shutdown."""
        if not self._tasks:
            return
        _, not_done = await asyncio.wait(set(self._tasks), timeout=timeout)
        if not_done:
            logger.warning(f"{len(not_done)} background tasks still running after drain timeout")

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
