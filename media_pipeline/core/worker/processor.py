"""
One processing attempt for one claimed job.

The processor is the only writer of a job while it holds the claim. It
walks the job through fixed progress checkpoints, hands the plan to the
engine in a worker thread, verifies the artifact and stores it. Any
failure is classified and turned into either a delayed retry or a
terminal failure; terminal outcomes always schedule the source for
cleanup.
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Optional

from media_pipeline.config import RETRY_BASE_DELAY_SECONDS, RETRY_MAX_DELAY_SECONDS
from media_pipeline.core.cleanup import CleanupManager
from media_pipeline.core.engines.base import EngineResult, TransformEngine
from media_pipeline.core.errors import (
    ErrorCode,
    InvalidTransition,
    MediaPipelineError,
    MissingInputFault,
    OutputIntegrityFault,
    TimeoutFault,
    ValidationFault,
)
from media_pipeline.core.models import (
    CleanupReason,
    Job,
    MediaDescriptor,
    ProcessingResult,
)
from media_pipeline.core.operations import Encode, MediaKind
from media_pipeline.core.plan_builder import MAX_OPERATIONS
from media_pipeline.core.queue import JobQueue
from media_pipeline.core.security import validate_upload
from media_pipeline.core.state_machine import (
    PROGRESS_DONE,
    PROGRESS_STARTED,
    PROGRESS_TRANSFORMED,
    PROGRESS_VALIDATED,
    decide_failure,
)
from media_pipeline.core.stats import WorkerStats
from media_pipeline.core.storage import ArtifactStorage
from media_pipeline.core.worker.classification import classify_fault
from media_pipeline.core.worker.events import (
    EventEmitter,
    JobCompleted,
    JobFailed,
    JobProgressed,
    JobRetrying,
    JobStarted,
)

logger = logging.getLogger(__name__)


class JobProcessor:
    """Runs claimed jobs of one media kind."""

    def __init__(
        self,
        queue: JobQueue,
        engine: TransformEngine,
        stats: WorkerStats,
        cleanup: CleanupManager,
        storage: ArtifactStorage,
        output_dir: Path,
        job_timeout: float,
        events: Optional[EventEmitter] = None,
        base_delay: float = RETRY_BASE_DELAY_SECONDS,
        max_delay: float = RETRY_MAX_DELAY_SECONDS,
    ):
        self.queue = queue
        self.engine = engine
        self.kind: MediaKind = engine.kind
        self.stats = stats
        self.cleanup = cleanup
        self.storage = storage
        self.output_dir = output_dir
        self.job_timeout = job_timeout
        self.events = events or EventEmitter()
        self.base_delay = base_delay
        self.max_delay = max_delay

    async def process(self, job: Job) -> Job:
        """Run one attempt of ``job`` and hand it back to the queue."""
        started = time.monotonic()
        # Captured now: a reclaim stamps a new token on the shared job
        token = job.claim_token
        self.stats.job_started()
        await self.events.emit(JobStarted(job.id, job.kind, attempt=job.attempts_made))

        try:
            result = await self._attempt(job, token, started)
        except InvalidTransition as exc:
            logger.warning("Abandoning job %s: %s", job.id, exc.message)
            self.stats.job_dropped()
            return job
        except Exception as exc:
            fault = classify_fault(exc)
            if not isinstance(exc, MediaPipelineError):
                logger.exception("Unexpected error processing job %s", job.id)
            return await self._handle_failure(job, token, fault, started)

        try:
            finished = await self.queue.complete(job.id, result, token=token)
        except InvalidTransition as exc:
            # The claim expired and the job was reclaimed while we worked
            logger.warning("Dropping result of job %s: %s", job.id, exc.message)
            self.stats.job_dropped()
            return job

        self.cleanup.schedule(job.source_path, job.id, CleanupReason.COMPLETED)
        self.stats.job_finished(
            True,
            result.processing_time_ms,
            video_duration=result.media.duration if self.kind == MediaKind.VIDEO else None,
            file_size=job.declared_size,
        )
        await self.events.emit(JobCompleted(job.id, job.kind, result=result))
        return finished

    async def _progress(self, job: Job, token: Optional[str], value: int) -> None:
        progress = await self.queue.update_progress(job.id, value, token=token)
        await self.events.emit(JobProgressed(job.id, job.kind, progress=progress))

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    async def _attempt(self, job: Job, token: Optional[str], started: float) -> ProcessingResult:
        source = Path(job.source_path)
        if not source.is_file():
            raise MissingInputFault(f"Source file missing for job {job.id}")
        await self._progress(job, token, PROGRESS_STARTED)

        self._revalidate(job, source)
        await self._progress(job, token, PROGRESS_VALIDATED)

        output = await self._run_engine(job, source)
        await self._progress(job, token, PROGRESS_TRANSFORMED)

        output_size = self._verify_output(output)
        output_ref = await asyncio.to_thread(
            self.storage.put, output.output_path, output.output_path.name
        )
        await self._progress(job, token, PROGRESS_DONE)

        return ProcessingResult(
            output_ref=output_ref,
            output_path=str(output.output_path),
            original_size=job.declared_size,
            output_size=output_size,
            media=MediaDescriptor(
                format=output.format,
                width=output.width,
                height=output.height,
                channels=output.channels,
                has_alpha=output.has_alpha,
                duration=output.duration,
                codec=output.codec,
                fps=output.fps,
            ),
            processing_time_ms=int((time.monotonic() - started) * 1000),
            operations=output.applied_operations,
            metadata=output.metadata,
        )

    async def _run_engine(self, job: Job, source: Path) -> EngineResult:
        """
        Run the engine in a thread and keep the slot until that thread returns.

        Engines stop at their next checkpoint once the deadline passes. An
        engine that finishes late still counts as timed out.
        """
        deadline = time.monotonic() + self.job_timeout
        engine_call = asyncio.ensure_future(
            asyncio.to_thread(self.engine.apply, source, job.plan, self.output_dir, job.id, deadline)
        )
        done, _ = await asyncio.wait({engine_call}, timeout=self.job_timeout)
        if done:
            return engine_call.result()

        logger.warning("Job %s passed its %.0fs timeout, waiting for the engine to stop", job.id, self.job_timeout)
        await asyncio.wait({engine_call})
        raise TimeoutFault(f"Job exceeded {self.job_timeout:.0f}s timeout") from engine_call.exception()

    def _revalidate(self, job: Job, source: Path) -> None:
        """The source may have changed since submission; check it and the plan again."""
        validate_upload(job.kind, source, job.original_name, job.declared_size, job.media_type)

        plan = job.plan
        if plan.media_kind != job.kind:
            raise ValidationFault(
                f"Plan is for {plan.media_kind.value}, job is {job.kind.value}",
                ErrorCode.INVALID_PLAN,
            )
        if not plan.operations or not isinstance(plan.operations[-1], Encode):
            raise ValidationFault("Plan must end with an encode step", ErrorCode.INVALID_PLAN)
        if plan.requested_count > MAX_OPERATIONS[job.kind]:
            raise ValidationFault(
                f"Plan has {plan.requested_count} operations, maximum is {MAX_OPERATIONS[job.kind]}",
                ErrorCode.INVALID_PLAN,
            )

    def _verify_output(self, output: EngineResult) -> int:
        path = Path(output.output_path)
        size = path.stat().st_size if path.is_file() else 0
        if size == 0:
            raise OutputIntegrityFault(
                f"Engine produced no output at {path.name}",
                code=ErrorCode.EMPTY_OUTPUT,
            )
        if self.kind == MediaKind.IMAGE and not (output.width and output.height):
            raise OutputIntegrityFault(
                f"Output image has invalid dimensions {output.width}x{output.height}",
                code=ErrorCode.ZERO_DIMENSIONS,
            )
        return size

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(
        self, job: Job, token: Optional[str], fault: MediaPipelineError, started: float
    ) -> Job:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        decision = decide_failure(
            fault.retryable,
            job.attempts_made,
            job.max_attempts,
            self.base_delay,
            self.max_delay,
        )

        try:
            if decision.retry:
                updated = await self.queue.retry(
                    job.id, decision.delay, fault.code.value, fault.message, token=token
                )
            else:
                updated = await self.queue.fail(job.id, fault.code.value, fault.message, token=token)
        except InvalidTransition as exc:
            logger.warning("Dropping failure of job %s: %s", job.id, exc.message)
            self.stats.job_dropped()
            return job

        if decision.retry:
            self.stats.job_retrying()
            await self.events.emit(JobRetrying(
                job.id, job.kind,
                attempt=job.attempts_made,
                delay=decision.delay,
                code=fault.code.value,
                reason=fault.message,
            ))
            return updated

        self.schedule_failure_cleanup(updated, decision.cleanup_reason or CleanupReason.UNRECOVERABLE_ERROR)
        self.stats.job_finished(False, elapsed_ms)
        await self.events.emit(JobFailed(
            job.id, job.kind,
            code=fault.code.value,
            reason=fault.message,
            cleanup_reason=decision.cleanup_reason,
        ))
        return updated

    def schedule_failure_cleanup(self, job: Job, reason: CleanupReason) -> None:
        """Release the source and any partial output of a terminally failed job."""
        self.cleanup.schedule(job.source_path, job.id, reason)
        for leftover in self.output_dir.glob(f"{job.id}.*"):
            self.cleanup.schedule(str(leftover), job.id, reason)
