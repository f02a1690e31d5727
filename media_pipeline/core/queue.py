"""
Job queue contract and the in-process implementation.

The queue owns every job between attempts. A worker slot claims a job,
becomes its only writer for one attempt, and hands it back through
``complete``, ``retry`` or ``fail``.
"""

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Tuple

from media_pipeline.core.errors import ErrorCode, InvalidTransition, JobNotFoundError
from media_pipeline.core.models import Job, JobState, ProcessingResult, utcnow
from media_pipeline.core.state_machine import PROGRESS_DONE, advance_progress, transition

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """Priority-ordered store of jobs with single-claimant delivery."""

    @abstractmethod
    async def enqueue(self, job: Job) -> str:
        """Store a waiting job. Returns its id."""
        ...

    @abstractmethod
    async def claim(self, timeout: Optional[float] = None) -> Optional[Job]:
        """Take the highest priority ready job, or None after ``timeout`` seconds."""
        ...

    # Writes below take the ``claim_token`` stamped on the job by ``claim``.
    # A token from an earlier, reclaimed claim raises ``InvalidTransition``;
    # ``token=None`` skips the ownership check.

    @abstractmethod
    async def update_progress(self, job_id: str, progress: int, token: Optional[str] = None) -> int:
        ...

    @abstractmethod
    async def complete(self, job_id: str, result: ProcessingResult, token: Optional[str] = None) -> Job:
        ...

    @abstractmethod
    async def retry(
        self, job_id: str, delay: float, code: str, reason: str, token: Optional[str] = None
    ) -> Job:
        ...

    @abstractmethod
    async def fail(self, job_id: str, code: str, reason: str, token: Optional[str] = None) -> Job:
        ...

    @abstractmethod
    async def release(self, job_id: str, token: Optional[str] = None) -> Job:
        """Give back a claimed job without spending an attempt."""
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def position(self, job_id: str) -> Optional[int]:
        """1-based position among ready jobs, None when not waiting."""
        ...

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        ...

    @abstractmethod
    async def reclaim_stalled(self) -> List[Job]:
        """Return expired claims to the queue, failing those out of attempts."""
        ...

    @abstractmethod
    async def expire_results(self, cutoff: datetime) -> List[Job]:
        """Mark completed jobs processed before ``cutoff`` as expired and return them."""
        ...

    async def depth(self) -> int:
        """Jobs waiting to be claimed, including those in backoff."""
        counts = await self.counts()
        return counts[JobState.WAITING.value]


class InMemoryJobQueue(JobQueue):
    """
    Single-process queue backed by two heaps.

    Ready jobs are ordered by (priority desc, submission order). Jobs
    waiting out a retry backoff sit in a delayed heap until they are due.
    """

    def __init__(
        self,
        name: str,
        lease_seconds: float = 330.0,
        keep_completed: int = 100,
        keep_failed: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self._lease_seconds = lease_seconds
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._clock = clock

        self._jobs: Dict[str, Job] = {}
        self._ready: List[Tuple[int, int, str]] = []
        self._delayed: List[Tuple[float, int, str]] = []
        self._leases: Dict[str, float] = {}
        self._completed_ids: Deque[str] = deque()
        self._failed_ids: Deque[str] = deque()
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

    # ------------------------------------------------------------------
    # Internal helpers (call with the condition held)
    # ------------------------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return job

    def _owned(self, job_id: str, token: Optional[str]) -> Job:
        job = self._require(job_id)
        if token is not None and job.claim_token != token:
            raise InvalidTransition(
                f"Job {job_id} is no longer held by this claim",
                details={"job_id": job_id, "state": job.state.value},
            )
        return job

    def _push(self, job: Job) -> None:
        if job.available_at > self._clock():
            heapq.heappush(self._delayed, (job.available_at, next(self._seq), job.id))
        else:
            heapq.heappush(self._ready, (-int(job.priority), next(self._seq), job.id))

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None and job.state == JobState.WAITING:
                heapq.heappush(self._ready, (-int(job.priority), next(self._seq), job_id))

    def _pop_ready(self) -> Optional[Job]:
        self._promote_due()
        while self._ready:
            _, _, job_id = heapq.heappop(self._ready)
            job = self._jobs.get(job_id)
            if job is not None and job.state == JobState.WAITING:
                return job
        return None

    def _next_due_in(self) -> Optional[float]:
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - self._clock())

    def _retain(self, job: Job) -> None:
        ids, limit = (
            (self._completed_ids, self._keep_completed)
            if job.state == JobState.COMPLETED
            else (self._failed_ids, self._keep_failed)
        )
        ids.append(job.id)
        while len(ids) > limit:
            expired = ids.popleft()
            self._jobs.pop(expired, None)
            logger.debug("[%s] Pruned finished job %s", self.name, expired)

    # ------------------------------------------------------------------
    # JobQueue
    # ------------------------------------------------------------------

    async def enqueue(self, job: Job) -> str:
        async with self._cond:
            if job.state != JobState.WAITING:
                raise ValueError(f"Only waiting jobs can be enqueued (got {job.state.value})")
            self._jobs[job.id] = job
            self._push(job)
            self._cond.notify()
        logger.info("[%s] Enqueued job %s (priority=%s)", self.name, job.id, job.priority.name)
        return job.id

    async def claim(self, timeout: Optional[float] = None) -> Optional[Job]:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        async with self._cond:
            while True:
                job = self._pop_ready()
                if job is not None:
                    transition(job, JobState.ACTIVE)
                    job.attempts_made += 1
                    job.started_at = utcnow()
                    job.claim_token = uuid.uuid4().hex
                    self._leases[job.id] = self._clock() + self._lease_seconds
                    return job

                wait = self._next_due_in()
                if deadline is not None:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)

                try:
                    await asyncio.wait_for(self._cond.wait(), timeout=wait)
                except asyncio.TimeoutError:
                    pass

    async def update_progress(self, job_id: str, progress: int, token: Optional[str] = None) -> int:
        async with self._cond:
            job = self._owned(job_id, token)
            job.progress = advance_progress(job.progress, progress)
            return job.progress

    async def complete(self, job_id: str, result: ProcessingResult, token: Optional[str] = None) -> Job:
        async with self._cond:
            job = self._owned(job_id, token)
            transition(job, JobState.COMPLETED)
            job.claim_token = None
            job.result = result
            job.progress = advance_progress(job.progress, PROGRESS_DONE)
            job.failure_code = None
            job.failure_reason = None
            job.processed_at = utcnow()
            self._leases.pop(job_id, None)
            self._retain(job)
            return job

    async def retry(
        self, job_id: str, delay: float, code: str, reason: str, token: Optional[str] = None
    ) -> Job:
        async with self._cond:
            job = self._owned(job_id, token)
            transition(job, JobState.WAITING)
            job.claim_token = None
            job.failure_code = code
            job.failure_reason = reason
            job.available_at = self._clock() + max(0.0, delay)
            self._leases.pop(job_id, None)
            self._push(job)
            self._cond.notify()
            return job

    async def fail(self, job_id: str, code: str, reason: str, token: Optional[str] = None) -> Job:
        async with self._cond:
            job = self._owned(job_id, token)
            transition(job, JobState.FAILED)
            job.claim_token = None
            job.failure_code = code
            job.failure_reason = reason
            job.processed_at = utcnow()
            self._leases.pop(job_id, None)
            self._retain(job)
            return job

    async def release(self, job_id: str, token: Optional[str] = None) -> Job:
        async with self._cond:
            job = self._owned(job_id, token)
            transition(job, JobState.WAITING)
            job.claim_token = None
            job.attempts_made = max(0, job.attempts_made - 1)
            self._leases.pop(job_id, None)
            self._push(job)
            self._cond.notify()
            return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._cond:
            return self._jobs.get(job_id)

    async def position(self, job_id: str) -> Optional[int]:
        async with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.WAITING:
                return None
            self._promote_due()
            ordered = sorted(entry for entry in self._ready if entry[2] in self._jobs)
            for index, (_, _, ready_id) in enumerate(ordered, start=1):
                if ready_id == job_id:
                    return index
            return len(ordered) + 1

    async def counts(self) -> Dict[str, int]:
        async with self._cond:
            counts = {state.value: 0 for state in JobState}
            delayed = 0
            now = self._clock()
            for job in self._jobs.values():
                counts[job.state.value] += 1
                if job.state == JobState.WAITING and job.available_at > now:
                    delayed += 1
            counts["delayed"] = delayed
            return counts

    async def reclaim_stalled(self) -> List[Job]:
        reclaimed: List[Job] = []
        async with self._cond:
            now = self._clock()
            for job_id, expires in list(self._leases.items()):
                if expires > now:
                    continue
                job = self._jobs.get(job_id)
                self._leases.pop(job_id, None)
                if job is None or job.state != JobState.ACTIVE:
                    continue
                job.claim_token = None
                if job.attempts_made >= job.max_attempts:
                    transition(job, JobState.FAILED)
                    job.failure_code = ErrorCode.PROCESSING_TIMEOUT.value
                    job.failure_reason = "Job stalled and exhausted its attempts"
                    job.processed_at = utcnow()
                    self._retain(job)
                else:
                    transition(job, JobState.WAITING)
                    job.available_at = now
                    self._push(job)
                reclaimed.append(job)
            if reclaimed:
                self._cond.notify_all()
        for job in reclaimed:
            logger.warning("[%s] Reclaimed stalled job %s -> %s", self.name, job.id, job.state.value)
        return reclaimed

    async def expire_results(self, cutoff: datetime) -> List[Job]:
        expired: List[Job] = []
        async with self._cond:
            for job_id in self._completed_ids:
                job = self._jobs.get(job_id)
                if job is None or job.artifact_expired or job.result is None:
                    continue
                if job.processed_at is not None and job.processed_at < cutoff:
                    job.artifact_expired = True
                    expired.append(job)
        return expired
