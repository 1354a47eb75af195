"""
Single-flight request deduplication

Concurrent callers asking for the same key share one in-flight task. The entry
is removed when the task settles, so later callers start a fresh one.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Generic, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Map of key -> shared in-flight task."""

    def __init__(self):
        self._inflight: dict[Hashable, asyncio.Task[T]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Await the in-flight task for key, starting one with factory if needed.

        A caller being cancelled does not cancel the shared task for others.
        """
        async with self._lock:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.create_task(self._execute(key, factory))
                self._inflight[key] = task
            else:
                logger.debug("Joining in-flight request for %s", key)
        return await asyncio.shield(task)

    async def _execute(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            self._inflight.pop(key, None)
