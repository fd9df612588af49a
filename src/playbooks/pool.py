"""WorkerPool - global bound on concurrently executing step invocations."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class WorkerPool:
    """
    Semaphore-bounded pool shared by every run of an engine.

    Steps that find the pool full wait for a slot instead of spawning
    unbounded concurrency.

    Example:
        pool = WorkerPool(max_workers=4)
        async with pool.slot():
            output = await dispatcher.dispatch(step, context)
    """

    def __init__(self, max_workers: int = 10) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self._semaphore = asyncio.Semaphore(max_workers)
        self.active = 0
        self.waiting = 0
        self.completed = 0
        self.peak_active = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one worker slot for the duration of the block."""
        self.waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.waiting -= 1

        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            yield
        finally:
            self.active -= 1
            self.completed += 1
            self._semaphore.release()

    def stats(self) -> Dict[str, int]:
        """Current pool utilisation."""
        return {
            "max_workers": self.max_workers,
            "active": self.active,
            "waiting": self.waiting,
            "completed": self.completed,
            "peak_active": self.peak_active,
        }
