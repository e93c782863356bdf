"""
BackgroundTasks - owns fire-and-forget asyncio tasks so they can be cancelled on shutdown.
"""

import asyncio
from typing import Any, Coroutine

from loguru import logger


class BackgroundTasks:
    def __init__(self, name: str = "background"):
        self._name = name
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        """Schedule ``coro``; its result is discarded and failures are logged."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug(f"[{self._name}] task {task.get_name()} failed: {exc}")

    def __len__(self) -> int:
        return len(self._tasks)

    async def cancel_all(self) -> int:
        """Cancel every pending task except the caller and wait for them to finish."""
        me = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not me]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.debug(f"[{self._name}] cancelled {len(tasks)} tasks")
        self._tasks.clear()
        return len(tasks)
