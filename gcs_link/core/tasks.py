"""Owned groups of background tasks."""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Optional, Set

LOGGER = logging.getLogger(__name__)


class TaskScope:
    """Supervisory context that owns a set of named child tasks.

    Closing the scope cancels and awaits every child, so nothing spawned
    through it outlives its owner. A child that fails is logged, it does
    not tear down its siblings.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, *, name: Optional[str] = None) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError(f"Task scope {self._name} is closed")
        task = asyncio.create_task(coro, name=f"{self._name}:{name or 'task'}")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "Background task %s failed", task.get_name(), exc_info=exc
            )

    async def aclose(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            # Failures were already logged by _on_done.
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    async def __aenter__(self) -> "TaskScope":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
