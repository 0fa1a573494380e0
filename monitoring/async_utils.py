import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List

logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait until the first task finishes, then cancel the others and run ``cleanup``.

    A failure in the finished task is logged and re-raised after cleanup.
    """
    task_list: List[asyncio.Task] = list(tasks)
    error: Optional[BaseException] = None
    try:
        if task_list:
            done, _ = await asyncio.wait(task_list, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    error = task.exception()
                    logger.error("Task %s failed: %r", task.get_name(), error)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
    if error is not None:
        raise error
