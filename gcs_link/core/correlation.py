"""Expiring table of one-shot waiters keyed by a match predicate.

Each waiter registers a predicate and a deadline and receives the first
inbound frame that satisfies it. Entries are independent, so several callers
can wait on the same command id and each receives its own first match.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

from .models import Frame

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingCorrelation:
    predicate: Callable[[Frame], bool]
    deadline: float
    future: asyncio.Future[Frame]

    @property
    def done(self) -> bool:
        return self.future.done()


class CorrelationTable:
    def __init__(self) -> None:
        self._entries: List[PendingCorrelation] = []

    def __len__(self) -> int:
        return len(self._entries)

    def register(
        self, predicate: Callable[[Frame], bool], timeout: float
    ) -> PendingCorrelation:
        loop = asyncio.get_running_loop()
        entry = PendingCorrelation(
            predicate=predicate,
            deadline=loop.time() + max(0.0, timeout),
            future=loop.create_future(),
        )
        self._entries.append(entry)
        return entry

    def offer(self, frame: Frame) -> int:
        """Resolve every pending entry matching ``frame``; return the count."""

        self.expire()
        matched = 0
        for entry in list(self._entries):
            if entry.done or not entry.predicate(frame):
                continue
            entry.future.set_result(frame)
            self._entries.remove(entry)
            matched += 1
        return matched

    def expire(self, now: Optional[float] = None) -> int:
        if now is None:
            now = asyncio.get_running_loop().time()
        overdue = [
            entry for entry in self._entries if entry.done or entry.deadline <= now
        ]
        for entry in overdue:
            self._entries.remove(entry)
        return len(overdue)

    def discard(self, entry: PendingCorrelation) -> None:
        if entry in self._entries:
            self._entries.remove(entry)
        if not entry.future.done():
            entry.future.cancel()

    async def wait(self, entry: PendingCorrelation) -> Optional[Frame]:
        """Wait for ``entry`` to resolve; None once its deadline passes."""

        remaining = entry.deadline - asyncio.get_running_loop().time()
        try:
            if not entry.done and remaining <= 0:
                return None
            return await asyncio.wait_for(entry.future, timeout=max(0.0, remaining))
        except asyncio.TimeoutError:
            return None
        finally:
            self.discard(entry)

    async def expect(
        self, predicate: Callable[[Frame], bool], timeout: float
    ) -> Optional[Frame]:
        return await self.wait(self.register(predicate, timeout))
