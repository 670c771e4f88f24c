"""Detached background work.

Cosmetic or enrichment side effects (typing indicators, mark-seen, tagging,
notifications, alerts) are started with ``spawn_detached`` and never awaited
by the request path. Each detached task owns its error handling: exceptions
are logged here and never reach the event loop's unhandled-exception hook.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

from shopbot.logging_config import get_logger

logger = get_logger("background")

_detached_tasks: Set[asyncio.Task] = set()


def spawn_detached(
    factory: Callable[[], Awaitable[Any]],
    *,
    name: str,
    context: Optional[dict] = None,
    log_level: int = logging.WARNING,
) -> asyncio.Task:
    """Start ``factory()`` as a detached task and return it.

    The factory is invoked inside the task, so even errors raised while
    building the awaitable are contained. A strong reference is held until
    the task finishes.
    """

    async def _run() -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.log(
                log_level,
                f"Detached task {name} failed: {e}",
                extra={"context": {**(context or {}), "task": name, "error_type": type(e).__name__}},
            )

    task = asyncio.get_running_loop().create_task(_run(), name=f"detached:{name}")
    _detached_tasks.add(task)
    task.add_done_callback(_detached_tasks.discard)
    return task


async def wait_for_detached(timeout: Optional[float] = None) -> int:
    """Wait for detached tasks of the running loop, including ones they spawn.

    Returns the number of tasks still pending when the timeout expired.
    """
    loop = asyncio.get_running_loop()
    deadline = None if timeout is None else loop.time() + timeout
    current = asyncio.current_task()

    while True:
        pending = {
            task
            for task in _detached_tasks
            if not task.done() and task is not current and task.get_loop() is loop
        }
        if not pending:
            return 0
        remaining = None if deadline is None else deadline - loop.time()
        if remaining is not None and remaining <= 0:
            logger.warning(
                "Detached tasks still running after drain timeout",
                extra={"context": {"pending": len(pending)}},
            )
            return len(pending)
        await asyncio.wait(pending, timeout=remaining)
