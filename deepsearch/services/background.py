"""Detached fire-and-forget tasks with a bounded timeout and failure logging."""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from deepsearch.services.logger import logger


class BackgroundTasks:
    """Holds references to detached tasks so they are not garbage collected mid-flight.

    The request path never awaits these; tests call ``drain()`` to observe them.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(
        self,
        coro: Awaitable[Any],
        *,
        name: str,
        timeout: float | None = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._run(coro, name=name, timeout=timeout), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _run(coro: Awaitable[Any], *, name: str, timeout: float | None) -> Any:
        try:
            if timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Background task '{name}' timed out after {timeout}s")
        except asyncio.CancelledError:
            logger.warning(f"Background task '{name}' was cancelled")
            raise
        except Exception as e:
            logger.warning(f"Background task '{name}' failed: {e}")
        return None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


background_tasks = BackgroundTasks()
