"""
Worker pool: N concurrent slots claiming jobs from one queue.
"""

import asyncio
import logging
from typing import List, Optional

from media_pipeline.core.queue import JobQueue
from media_pipeline.core.worker.processor import JobProcessor

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs ``concurrency`` claim loops against ``queue``."""

    def __init__(
        self,
        name: str,
        queue: JobQueue,
        processor: JobProcessor,
        concurrency: int = 1,
        poll_interval: float = 1.0,
    ):
        self.name = name
        self.queue = queue
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self._tasks: List[asyncio.Task] = []
        self._running = False
        self._in_flight = 0
        self._idle: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._idle = asyncio.Event()
        self._idle.set()
        self._tasks = [
            asyncio.create_task(self._worker_loop(slot), name=f"{self.name}-worker-{slot}")
            for slot in range(self.concurrency)
        ]
        logger.info("[%s] Started %d worker slot(s)", self.name, self.concurrency)

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Stop claiming, give in-flight jobs ``drain_timeout`` seconds, then cancel."""
        if not self._running:
            return
        self._running = False

        if self._idle is not None and self._in_flight:
            logger.info("[%s] Draining %d in-flight job(s)", self.name, self._in_flight)
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("[%s] Drain timed out with %d job(s) in flight", self.name, self._in_flight)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("[%s] Worker pool stopped", self.name)

    async def _worker_loop(self, slot: int) -> None:
        while self._running:
            try:
                job = await self.queue.claim(timeout=self.poll_interval)
            except asyncio.CancelledError:
                break
            if job is None:
                continue

            if not self._running:
                # Claimed during shutdown; hand it back untouched
                await self.queue.release(job.id, token=job.claim_token)
                break

            self._in_flight += 1
            assert self._idle is not None
            self._idle.clear()
            try:
                await self.processor.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] Worker slot %d crashed on job %s", self.name, slot, job.id)
            finally:
                self._in_flight -= 1
                if self._in_flight == 0:
                    self._idle.set()
