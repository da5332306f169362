"""Background writer for LinkVisit rows.

The redirect handler only enqueues; worker tasks drain the queue and insert
rows. Delivery is at-most-once: a full queue or a failed insert drops the
visit and logs it, nothing is retried.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from ..exceptions import PersistenceError
from ..observability import VISIT_WRITE_FAILURES
from .geolocation import GeoLocation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VisitEvent:
    link_id: int
    ip: str
    location: GeoLocation
    rule_id: Optional[int]


class VisitStore(Protocol):
    async def insert(self, link_id: int, ip: str, location: GeoLocation, rule_id: Optional[int]): ...


class VisitRecorder:
    def __init__(self, store: VisitStore, max_pending: int = 10000, workers: int = 1):
        self.store = store
        self.queue: asyncio.Queue[VisitEvent] = asyncio.Queue(maxsize=max_pending)
        self.worker_count = workers
        self._workers: list[asyncio.Task] = []

    def start(self):
        for i in range(self.worker_count):
            self._workers.append(asyncio.create_task(self._run(), name=f"visit-writer-{i}"))

    async def stop(self, timeout: float = 5.0):
        """Flush what is queued (bounded by ``timeout``), then stop the workers."""
        try:
            await asyncio.wait_for(self.queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Dropping {self.queue.qsize()} unrecorded visits on shutdown")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

    def submit(self, event: VisitEvent) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            VISIT_WRITE_FAILURES.labels(reason="queue_full").inc()
            logger.error(f"Visit queue full, dropping visit for link {event.link_id}")
            return False
        return True

    async def join(self):
        await self.queue.join()

    async def _run(self):
        while True:
            event = await self.queue.get()
            try:
                await self._write(event)
            finally:
                self.queue.task_done()

    async def _write(self, event: VisitEvent):
        try:
            await self.store.insert(event.link_id, event.ip, event.location, event.rule_id)
        except PersistenceError as e:
            VISIT_WRITE_FAILURES.labels(reason="persistence").inc()
            logger.error(f"{e}: {e.__cause__}")
        except Exception:
            VISIT_WRITE_FAILURES.labels(reason="unexpected").inc()
            logger.exception(f"Unexpected error recording visit for link {event.link_id}")
