"""Detached background jobs for asynchronous OSB operations."""

import asyncio
import logging
from typing import Awaitable, Dict, Set

logger = logging.getLogger(__name__)


class JobScheduler:
    """Runs fire-and-forget coroutines as tasks on the current event loop.

    Jobs are keyed by operation id so the engine can tell whether an
    operation still has a live job in this process. Tasks inherit the
    submitting coroutine's context, so the correlation id follows the job.
    Nothing is persisted: jobs that have not finished when the process
    exits are lost.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._by_key: Dict[str, asyncio.Task] = {}

    def submit(self, key: str, coro: Awaitable) -> asyncio.Task:
        """Schedule ``coro``; must be called from inside the running loop."""
        task = asyncio.get_running_loop().create_task(self._run(key, coro), name=f"job:{key}")
        self._tasks.add(task)
        self._by_key[key] = task
        task.add_done_callback(lambda t: self._discard(key, t))
        logger.debug(f"Submitted background job {key}")
        return task

    def _discard(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._by_key.get(key) is task:
            del self._by_key[key]

    async def _run(self, key: str, coro: Awaitable) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            logger.warning(f"Background job {key} cancelled")
            raise
        except Exception:
            # Jobs record their own failures; anything reaching here is a bug
            logger.exception(f"Background job {key} raised an unhandled exception")

    def is_running(self, key: str) -> bool:
        task = self._by_key.get(key)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = None) -> None:
        """Wait for every job (including jobs submitted while waiting) to finish."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, pending = await asyncio.wait(set(self._tasks), timeout=remaining)
            if pending and deadline is not None and loop.time() >= deadline:
                logger.warning(f"{len(pending)} background jobs still running after drain timeout")
                return
