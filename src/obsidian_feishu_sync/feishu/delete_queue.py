"""
Serialized delete queue.

The document service accepts at most three delete requests per second. Every
delete in the process goes through one queue drained by a single consumer
that spaces dispatches at least ``min_interval`` seconds apart.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Tuple

logger = logging.getLogger("sync.delete_queue")

DELETE_MIN_INTERVAL = 0.35

DeleteOperation = Callable[[], Awaitable[Any]]


class DeleteQueue:
    """
    FIFO of pending delete operations with a minimum dispatch spacing.

    Parameters
    ----------
    min_interval : float
        Minimum seconds between two dispatched deletes.

    clock : Callable[[], float]
        Monotonic time source.

    sleeper : Callable[[float], Awaitable[None]]
        Coroutine used to wait out the spacing.
    """

    def __init__(
        self,
        min_interval: float = DELETE_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleeper = sleeper
        self._pending: Deque[Tuple[DeleteOperation, "asyncio.Future[Any]"]] = deque()
        self._worker: Optional["asyncio.Task[None]"] = None
        self._last_dispatch: Optional[float] = None

    async def submit(self, operation: DeleteOperation) -> Any:
        """
        Enqueue ``operation`` and wait for its result.

        Exceptions raised by the operation propagate to the caller; they do
        not stop the consumer.
        """
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Any]" = loop.create_future()
        self._pending.append((operation, future))
        logger.debug("Delete enqueued (pending=%d)", len(self._pending))
        self._ensure_worker(loop)
        return await future

    def __len__(self) -> int:
        return len(self._pending)

    def _ensure_worker(self, loop: asyncio.AbstractEventLoop) -> None:
        worker = self._worker
        if worker is None or worker.done() or worker.get_loop() is not loop:
            self._worker = loop.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            operation, future = self._pending.popleft()

            if self._last_dispatch is not None:
                elapsed = self._clock() - self._last_dispatch
                if elapsed < self.min_interval:
                    await self._sleeper(self.min_interval - elapsed)

            self._last_dispatch = self._clock()
            try:
                result = await operation()
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
                continue
            if not future.done():
                future.set_result(result)


# Process-wide queue shared by every client
delete_queue = DeleteQueue()
