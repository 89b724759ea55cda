import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)

_tasks: Set[asyncio.Task] = set()


def fire_and_forget(coro: Awaitable, description: str) -> asyncio.Task:
    """Schedule ``coro`` without awaiting it; its failure is logged, never raised."""
    task = asyncio.ensure_future(coro)
    _tasks.add(task)

    def _done(t: asyncio.Task):
        _tasks.discard(t)
        if t.cancelled():
            logger.warning(f"{description} cancelled")
            return
        exc = t.exception()
        if exc is not None:
            logger.error(f"{description} failed: {exc!r}", exc_info=exc)
        else:
            logger.info(f"{description} finished")

    task.add_done_callback(_done)
    return task


def pending_tasks() -> int:
    return len(_tasks)


async def drain(timeout: float = 30.0):
    """Wait for scheduled background work, including work it schedules in turn."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while _tasks:
        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.warning(f"Timed out waiting for {len(_tasks)} background tasks")
            return
        await asyncio.wait(set(_tasks), timeout=remaining)
