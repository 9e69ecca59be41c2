# The module supervises background asyncio tasks that outlive the request which started them.
# Date: 2026-10-18
# Version: 0.1.0

import asyncio
from typing import Coroutine, Any, Optional, Set

from grounded_agent.utils.logger import console


class TaskSupervisor:
    """
    Holds strong references to detached tasks so they are not garbage collected
    mid-flight, and logs any exception a task ends with.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def active(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        console.debug(f"Background task '{task.get_name()}' started ({self.active} active).")
        return task

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            console.warning(f"Background task '{task.get_name()}' was cancelled.")
            return
        exc = task.exception()
        if exc is not None:
            console.logger.error(f"Background task '{task.get_name()}' failed: {exc}", exc_info=exc)

    async def shutdown(self, timeout: float = 5.0):
        """Cancels every task still running and waits for them to settle."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        console.info(f"Cancelling {len(pending)} background task(s)...")
        for task in pending:
            task.cancel()
        await asyncio.wait(pending, timeout=timeout)


# Create a singleton instance for global use throughout the application.
task_supervisor = TaskSupervisor()
