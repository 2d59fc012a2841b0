import asyncio
import logging
from typing import Iterable, Awaitable, Optional, Callable, List

logger = logging.getLogger(__name__)


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Run long-lived tasks until one fails or all are cancelled, then cancel the rest."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            results = await asyncio.gather(*task_list, return_exceptions=True)
            for task, result in zip(task_list, results):
                if isinstance(result, Exception) and not isinstance(result, asyncio.CancelledError):
                    logger.error("Task %s ended with %r", task.get_name(), result)
        if cleanup is not None:
            await cleanup()
