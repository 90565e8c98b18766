"""
In-process background work queue.

Request-triggered jobs that should not block the HTTP request (restores) and
scheduled backups are queued as work items: coroutine functions taking the
worker's stop event. Backup API calls run inline and never touch the queue.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from bareprox.core.config import settings
from bareprox.core.exceptions import ServiceUnavailableError

logger = logging.getLogger(__name__)

WorkItem = Callable[[asyncio.Event], Awaitable[None]]


@dataclass
class QueuedWork:
    name: str
    item: WorkItem


class BackgroundTaskQueue:
    """Bounded FIFO of work items."""

    def __init__(self, maxsize: Optional[int] = None):
        self.maxsize = settings.TASK_QUEUE_MAXSIZE if maxsize is None else maxsize
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)

    def enqueue(self, item: WorkItem, name: str = "work item"):
        """
        Queue a work item without waiting.

        Raises:
            ServiceUnavailableError: If the queue is full
        """
        try:
            self._queue.put_nowait(QueuedWork(name=name, item=item))
        except asyncio.QueueFull:
            logger.warning(f"Background queue full ({self.maxsize}); rejected {name}")
            raise ServiceUnavailableError("Background task queue is full. Try again later.")
        logger.debug(f"Queued {name} ({self._queue.qsize()} pending)")

    async def dequeue(self) -> QueuedWork:
        return await self._queue.get()

    def task_done(self):
        self._queue.task_done()

    async def join(self):
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()


class TaskQueueWorker:
    """
    Consumes a :class:`BackgroundTaskQueue`.

    Each item receives the worker's stop event as its cancellation signal.
    A failing item is logged and does not stop the worker.
    """

    def __init__(self, queue: BackgroundTaskQueue, workers: Optional[int] = None):
        self.queue = queue
        self.workers = max(1, settings.TASK_QUEUE_WORKERS if workers is None else workers)
        self.stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self):
        if self.running:
            return
        self.stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"bareprox-queue-worker-{i}") for i in range(self.workers)
        ]
        logger.info(f"Started {self.workers} background queue worker(s)")

    async def stop(self, timeout: float = 10.0):
        """Signal running items to stop, then cancel workers still busy after ``timeout``."""
        self.stop_event.set()
        if not self._tasks:
            return
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []
        logger.info("Background queue workers stopped")

    async def _run(self, index: int):
        while not self.stop_event.is_set():
            getter = asyncio.create_task(self.queue.dequeue())
            stopper = asyncio.create_task(self.stop_event.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)

            if getter not in done:
                getter.cancel()
                await asyncio.gather(getter, return_exceptions=True)
                break
            stopper.cancel()

            work = getter.result()
            try:
                logger.info(f"Worker {index} running {work.name}")
                await work.item(self.stop_event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Background work item {work.name} failed: {e}", exc_info=True)
            finally:
                self.queue.task_done()
