"""In-process hand-off from the webhook route to the event processor

A bounded asyncio queue drained by a fixed set of worker tasks. Delivery is
at-least-once: a submission dropped because the queue is full, or lost when the
process stops, leaves the event PENDING and the scheduled sweep picks it up.
"""
import asyncio
import logging
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from payhook.core.config import settings
from payhook.core.metrics import dispatch_dropped_counter
from payhook.db.session import SessionLocal
from payhook.services.event_processor import process_event

logger = logging.getLogger(__name__)


class ProcessingQueue:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        maxsize: Optional[int] = None,
        workers: Optional[int] = None
    ):
        self._session_factory = session_factory or SessionLocal
        self._worker_count = workers or settings.DISPATCH_WORKERS
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.DISPATCH_QUEUE_SIZE)
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def qsize(self) -> int:
        return self._queue.qsize()

    def submit(self, event_id: str) -> bool:
        """Queue an event id without waiting. Returns False when the queue is full."""
        try:
            self._queue.put_nowait(event_id)
            return True
        except asyncio.QueueFull:
            dispatch_dropped_counter.inc()
            logger.warning(f"Processing queue full, event {event_id} left PENDING for the sweep")
            return False

    def _process(self, event_id: str) -> str:
        db = self._session_factory()
        try:
            return process_event(db, event_id)
        finally:
            db.close()

    async def _worker(self, number: int):
        while True:
            event_id = await self._queue.get()
            try:
                await asyncio.to_thread(self._process, event_id)
            except Exception as e:
                logger.error(f"Dispatch worker {number} failed on event {event_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    def start(self):
        if self._workers:
            return
        for number in range(self._worker_count):
            self._workers.append(asyncio.create_task(self._worker(number), name=f"dispatch-worker-{number}"))
        logger.info(f"Processing queue started with {self._worker_count} workers")

    async def stop(self):
        """Cancel the workers; anything still queued stays PENDING in the database"""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self._queue.qsize():
            logger.info(f"Processing queue stopped with {self._queue.qsize()} events left for the sweep")

    async def join(self):
        """Wait until every queued event has been handled by a worker"""
        await self._queue.join()

    def drain_nowait(self) -> int:
        """Process everything queued on the calling thread (used without running workers)"""
        count = 0
        while True:
            try:
                event_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count
            try:
                self._process(event_id)
                count += 1
            finally:
                self._queue.task_done()
