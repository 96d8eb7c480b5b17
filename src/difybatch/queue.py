"""
Bounded dispatch queue drained by a fixed pool of worker tasks.
"""

from __future__ import annotations

import asyncio
import typing as t

import structlog

from difybatch.exceptions import DispatchError
from difybatch.models import WorkItem

log = structlog.get_logger(__name__)

Handler = t.Callable[[WorkItem], t.Awaitable[t.Any]]


class DispatchQueue:
    """
    Hand work items from producers to concurrent consumers.

    Parameters
    ----------
    maxsize : int, optional
        Queue capacity, ``0`` for unbounded.
    concurrency : int, optional
        Number of worker tasks started by ``start``.
    """

    def __init__(self, *, maxsize: int = 1000, concurrency: int = 4) -> None:
        self._queue: asyncio.Queue[WorkItem] = asyncio.Queue(maxsize=maxsize)
        self._concurrency = concurrency
        self._workers: set[asyncio.Task[None]] = set()
        self._handler: Handler | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def qsize(self) -> int:
        return self._queue.qsize()

    def enqueue(self, item: WorkItem) -> None:
        """
        Put an item on the queue without waiting.

        Parameters
        ----------
        item : WorkItem
            Batch or retry request.

        Raises
        ------
        DispatchError
            If the queue is full.
        """
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull as error:
            raise DispatchError(
                f"Dispatch queue is full ({self._queue.maxsize} items), "
                f"could not enqueue {item.kind}"
            ) from error
        log.debug(event="Work item enqueued", kind=item.kind, queue_size=self._queue.qsize())

    def start(self, handler: Handler) -> None:
        """
        Start the worker tasks.

        Parameters
        ----------
        handler : Handler
            Coroutine function awaited for each item.
        """
        if self._workers:
            return
        self._handler = handler
        for index in range(self._concurrency):
            worker = asyncio.create_task(self._run_worker(), name=f"dispatch_worker_{index}")
            self._workers.add(worker)
            worker.add_done_callback(self._workers.discard)
        log.info(event="Dispatch workers started", concurrency=self._concurrency)

    async def _run_worker(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handler(item)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log.error(
                    event="Work item failed",
                    kind=item.kind,
                    error=str(object=error),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every enqueued item has been handled."""
        await self._queue.join()

    async def close(self) -> None:
        """Cancel the worker tasks, abandoning queued items."""
        workers = list(self._workers)
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        log.info(event="Dispatch workers stopped", abandoned=self._queue.qsize())
