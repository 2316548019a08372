"""
Background worker pool that keeps indexing off the interactive path.
"""

from __future__ import annotations

import asyncio
from collections import deque

import structlog

from .pipeline import IndexingOutcome, IndexingPipeline, PageContext

logger = structlog.get_logger(__name__)


class BackgroundIndexer:
    """Bounded queue of pages consumed by a fixed number of worker tasks."""

    def __init__(
        self,
        pipeline: IndexingPipeline,
        *,
        workers: int = 2,
        max_queue: int = 256,
        history: int = 100,
    ) -> None:
        if workers <= 0:
            raise ValueError("workers must be > 0")
        self.pipeline = pipeline
        self._worker_count = workers
        self._queue: asyncio.Queue[PageContext] = asyncio.Queue(maxsize=max_queue)
        self._workers: list[asyncio.Task[None]] = []
        self._closing = False
        self.recent: deque[IndexingOutcome] = deque(maxlen=history)
        self.processed = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._closing

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._workers:
            return
        self._closing = False
        self._workers = [
            asyncio.create_task(self._work(index), name=f"history-search-indexer-{index}")
            for index in range(self._worker_count)
        ]
        logger.debug("background indexer started", workers=self._worker_count)

    def submit(self, context: PageContext) -> bool:
        """Queue a page without waiting. Return False when the queue is full."""
        if self._closing:
            return False
        self.start()
        try:
            self._queue.put_nowait(context)
        except asyncio.QueueFull:
            logger.warning("indexing queue full, page dropped", url=context.url)
            return False
        return True

    async def enqueue(self, context: PageContext) -> None:
        """Queue a page, waiting for room if the queue is full."""
        if self._closing:
            raise RuntimeError("indexer is shutting down")
        self.start()
        await self._queue.put(context)

    async def join(self) -> None:
        await self._queue.join()

    async def shutdown(self, timeout: float = 5.0) -> int:
        """
        Stop accepting pages, give queued and running jobs ``timeout`` seconds
        to finish, then cancel the workers.

        Returns the number of queued pages that were never indexed.
        """
        self._closing = True
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "indexer drain timed out",
                    timeout=timeout,
                    remaining=self._queue.qsize(),
                )

        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info(
            "background indexer stopped",
            processed=self.processed,
            failed=self.failed,
            dropped=dropped,
        )
        return dropped

    async def _work(self, index: int) -> None:
        while True:
            context = await self._queue.get()
            try:
                outcome = await self.pipeline.index_page(context)
            except Exception:
                # One bad page must not take the worker down with it.
                self.failed += 1
                logger.exception("background indexing error", worker=index, url=context.url)
            else:
                self.processed += 1
                if not outcome.ok:
                    self.failed += 1
                self.recent.append(outcome)
            finally:
                self._queue.task_done()
