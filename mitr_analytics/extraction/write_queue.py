import asyncio
import logging
from collections.abc import Callable, Awaitable
from typing import Any

logger = logging.getLogger(__name__)

_QUEUE_MAXSIZE = 500

_queue: asyncio.Queue | None = None
_worker_task: asyncio.Task | None = None


def _get_queue() -> asyncio.Queue:
    global _queue
    if _queue is None:
        _queue = asyncio.Queue(maxsize=_QUEUE_MAXSIZE)
    return _queue


async def enqueue_write(operation: Callable[[], Awaitable[Any]]) -> Any:
    """Submit a write operation and await its result.

    Every mutation of the job, attribute and interest tables goes through here,
    so a read-check-update inside ``operation`` cannot interleave with another write.
    """
    if _worker_task is None or _worker_task.done():
        await start_write_worker()
    future = asyncio.get_running_loop().create_future()
    await _get_queue().put((operation, future))
    return await future


async def _worker():
    """Single worker that processes writes sequentially."""
    queue = _get_queue()
    while True:
        operation, future = await queue.get()
        try:
            result = await operation()
            if not future.cancelled():
                future.set_result(result)
        except Exception as e:
            if not future.cancelled():
                future.set_exception(e)
        finally:
            queue.task_done()


async def start_write_worker():
    global _worker_task, _queue
    if _worker_task and not _worker_task.done():
        return
    # A queue bound to a previous (closed) loop cannot be reused.
    _queue = asyncio.Queue(maxsize=_QUEUE_MAXSIZE)
    _worker_task = asyncio.create_task(_worker())
    logger.debug("Write queue worker started")


async def stop_write_worker():
    global _worker_task
    if _worker_task is None:
        return
    _worker_task.cancel()
    try:
        await _worker_task
    except asyncio.CancelledError:
        pass
    _worker_task = None
