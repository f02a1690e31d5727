"""
Media pipeline runtime.

Wires one queue, engine, stats object, cleanup manager and worker pool per
media kind, and exposes submission, status and health to the API.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from media_pipeline.config import (
    CLEANUP_INTERVAL_SECONDS,
    IMAGE_JOB_TIMEOUT_SECONDS,
    IMAGE_STALLED_INTERVAL_SECONDS,
    IMAGE_WORKER_CONCURRENCY,
    KEEP_COMPLETED_JOBS,
    KEEP_FAILED_JOBS,
    MAX_ATTEMPTS,
    OUTPUT_RETENTION_HOURS,
    PROCESSED_DIR,
    SHUTDOWN_DRAIN_SECONDS,
    UPLOAD_DIR,
    VIDEO_JOB_TIMEOUT_SECONDS,
    VIDEO_STALLED_INTERVAL_SECONDS,
    VIDEO_WORKER_CONCURRENCY,
    WATERMARK_DIR,
)
from media_pipeline.core.cleanup import CleanupManager
from media_pipeline.core.engines import TransformEngine
from media_pipeline.core.errors import ErrorCode, JobNotFoundError, MediaPipelineError, UnsupportedFormatFault
from media_pipeline.core.ingestion import Admission, admit, default_engine, kind_for_job_id
from media_pipeline.core.models import CleanupReason, Job, JobState, JobStatusView, JobSubmission, utcnow
from media_pipeline.core.operations import MediaKind, OperationPlan
from media_pipeline.core.plan_builder import FileContext, build_plan
from media_pipeline.core.queue import InMemoryJobQueue, JobQueue
from media_pipeline.core.security import validate_job_id
from media_pipeline.core.security.constants import IMAGE_MIME_TYPES, VIDEO_MIME_TYPES
from media_pipeline.core.stats import (
    HealthStatus,
    WorkerStats,
    classify_health,
    export_stats,
    process_memory_ratio,
    worst,
)
from media_pipeline.core.storage import ArtifactStorage, create_storage
from media_pipeline.core.worker import EventEmitter, JobProcessor, LoggingEventListener, WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KindSettings:
    concurrency: int
    job_timeout: float
    stalled_interval: float
    cleanup_interval: float

    @property
    def lease_seconds(self) -> float:
        return self.job_timeout + self.stalled_interval


DEFAULT_SETTINGS = {
    MediaKind.IMAGE: KindSettings(
        concurrency=IMAGE_WORKER_CONCURRENCY,
        job_timeout=IMAGE_JOB_TIMEOUT_SECONDS,
        stalled_interval=IMAGE_STALLED_INTERVAL_SECONDS,
        cleanup_interval=CLEANUP_INTERVAL_SECONDS,
    ),
    MediaKind.VIDEO: KindSettings(
        concurrency=VIDEO_WORKER_CONCURRENCY,
        job_timeout=VIDEO_JOB_TIMEOUT_SECONDS,
        stalled_interval=VIDEO_STALLED_INTERVAL_SECONDS,
        cleanup_interval=CLEANUP_INTERVAL_SECONDS * 2,
    ),
}


@dataclass
class KindRuntime:
    """Everything that processes one media kind."""

    kind: MediaKind
    settings: KindSettings
    queue: JobQueue
    engine: TransformEngine
    stats: WorkerStats
    cleanup: CleanupManager
    processor: JobProcessor
    pool: WorkerPool
    output_dir: Path
    maintenance_task: Optional[asyncio.Task] = field(default=None, repr=False)


class MediaPipeline:
    def __init__(
        self,
        storage: Optional[ArtifactStorage] = None,
        engines: Optional[Dict[MediaKind, TransformEngine]] = None,
        settings: Optional[Dict[MediaKind, KindSettings]] = None,
        upload_dir: Path = UPLOAD_DIR,
        processed_dir: Path = PROCESSED_DIR,
        watermark_dir: Path = WATERMARK_DIR,
        max_attempts: int = MAX_ATTEMPTS,
        retention_hours: float = OUTPUT_RETENTION_HOURS,
        events: Optional[EventEmitter] = None,
    ):
        self.storage = storage or create_storage()
        self.events = events or EventEmitter([LoggingEventListener("pipeline")])
        self.upload_dir = upload_dir
        self.watermark_dir = watermark_dir
        self.max_attempts = max_attempts
        self.retention_seconds = retention_hours * 3600
        self._started = False
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self._runtimes: Dict[MediaKind, KindRuntime] = {}

        engines = engines or {}
        settings = {**DEFAULT_SETTINGS, **(settings or {})}
        for kind in MediaKind:
            self._runtimes[kind] = self._build_runtime(
                kind,
                engines.get(kind) or default_engine(kind),
                settings[kind],
                processed_dir / f"{kind.value}s",
                self.retention_seconds,
            )

    def _build_runtime(
        self,
        kind: MediaKind,
        engine: TransformEngine,
        settings: KindSettings,
        output_dir: Path,
        retention_seconds: float,
    ) -> KindRuntime:
        output_dir.mkdir(parents=True, exist_ok=True)
        queue = InMemoryJobQueue(
            kind.value,
            lease_seconds=settings.lease_seconds,
            keep_completed=KEEP_COMPLETED_JOBS,
            keep_failed=KEEP_FAILED_JOBS,
        )
        stats = WorkerStats()
        cleanup = CleanupManager(
            kind.value,
            interval_seconds=settings.cleanup_interval,
            stats=stats,
            output_dir=output_dir,
            retention_seconds=retention_seconds,
        )
        processor = JobProcessor(
            queue=queue,
            engine=engine,
            stats=stats,
            cleanup=cleanup,
            storage=self.storage,
            output_dir=output_dir,
            job_timeout=settings.job_timeout,
            events=self.events,
        )
        pool = WorkerPool(kind.value, queue, processor, concurrency=settings.concurrency)
        return KindRuntime(
            kind=kind,
            settings=settings,
            queue=queue,
            engine=engine,
            stats=stats,
            cleanup=cleanup,
            processor=processor,
            pool=pool,
            output_dir=output_dir,
        )

    def runtime(self, kind: MediaKind) -> KindRuntime:
        return self._runtimes[kind]

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def submit(self, kind: MediaKind, submission: JobSubmission) -> Admission:
        runtime = self._runtimes[kind]
        return await admit(
            kind,
            submission,
            runtime.engine,
            runtime.queue,
            max_attempts=self.max_attempts,
            watermark_dir=self.watermark_dir,
        )

    async def get_job(self, job_id: str) -> Job:
        validate_job_id(job_id)
        kind = kind_for_job_id(job_id)
        job = await self._runtimes[kind].queue.get(job_id) if kind is not None else None
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found", details={"job_id": job_id})
        return job

    async def status(self, job_id: str) -> JobStatusView:
        job = await self.get_job(job_id)
        return job.to_status()

    async def statuses(self, job_ids: Iterable[str]) -> Dict[str, Union[JobStatusView, MediaPipelineError]]:
        """Status of each id; lookups that fail map to their error instead of raising."""
        results: Dict[str, Union[JobStatusView, MediaPipelineError]] = {}
        for job_id in job_ids:
            try:
                results[job_id] = await self.status(job_id)
            except MediaPipelineError as exc:
                results[job_id] = exc
        return results

    def artifact_available(self, job: Union[Job, JobStatusView]) -> bool:
        if job.state != JobState.COMPLETED or job.result is None or job.artifact_expired:
            return False
        return self.storage.is_available(job.result.output_ref)

    def preview_plan(
        self,
        kind: MediaKind,
        operations: Optional[Dict[str, Any]],
        media_type: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        duration: Optional[float] = None,
    ) -> OperationPlan:
        """Build the plan an upload with these properties would get, without queueing anything."""
        allowed = IMAGE_MIME_TYPES if kind == MediaKind.IMAGE else VIDEO_MIME_TYPES
        if media_type not in allowed:
            raise UnsupportedFormatFault(
                f"Unsupported {kind.value} type: {media_type}",
                code=ErrorCode.UNSUPPORTED_MIME_TYPE,
                details={"field": "mediaType"},
            )
        context = FileContext(
            size=0,
            media_type=media_type,
            width=width,
            height=height,
            duration=duration,
            watermark_dir=self.watermark_dir,
        )
        return build_plan(kind, operations, context)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def _kind_health(self, runtime: KindRuntime, memory_ratio: float) -> Dict[str, Any]:
        snapshot = runtime.stats.snapshot()
        counts = await runtime.queue.counts()
        depth = counts[JobState.WAITING.value]
        report = classify_health(memory_ratio, depth, snapshot.processed, snapshot.failed)
        exported = export_stats(snapshot, report, depth)
        exported["details"] = {
            "retried": snapshot.retried,
            "activeJobs": snapshot.active_jobs,
            "filesCleaned": snapshot.files_cleaned,
            "pendingCleanup": len(runtime.cleanup.pending()),
            "lastProcessedAt": snapshot.last_processed_at.isoformat() if snapshot.last_processed_at else None,
            "reasons": list(report.reasons),
            "jobs": counts,
        }
        if runtime.kind == MediaKind.VIDEO:
            exported["details"]["totalVideoDuration"] = round(snapshot.total_video_duration, 2)
            exported["details"]["averageVideoSize"] = snapshot.average_video_size
        return exported

    async def health(self) -> Dict[str, Any]:
        """Per-kind stats plus an overall rollup where the worst status wins."""
        memory_ratio = process_memory_ratio()
        per_kind = {
            kind.value: await self._kind_health(runtime, memory_ratio)
            for kind, runtime in self._runtimes.items()
        }

        snapshots = [runtime.stats.snapshot() for runtime in self._runtimes.values()]
        processed = sum(s.processed for s in snapshots)
        failed = sum(s.failed for s in snapshots)
        total_ms = sum(s.total_processing_ms for s in snapshots)
        finished = processed + failed

        return {
            "status": worst(*(HealthStatus(entry["status"]) for entry in per_kind.values())).value,
            "uptime": max(entry["uptime"] for entry in per_kind.values()),
            "processed": processed,
            "failed": failed,
            "avgProcessingTimeMs": round(total_ms / finished, 2) if finished else 0.0,
            "queueDepth": sum(entry["queueDepth"] for entry in per_kind.values()),
            "memoryRatio": round(memory_ratio, 4),
            "queues": per_kind,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def expire_artifacts(self, runtime: KindRuntime) -> List[Job]:
        """Delete stored artifacts of jobs completed longer ago than the retention window."""
        cutoff = utcnow() - timedelta(seconds=self.retention_seconds)
        expired = await runtime.queue.expire_results(cutoff)
        for job in expired:
            await asyncio.to_thread(self.storage.delete, job.result.output_ref)
            logger.info("[%s] Expired artifact of job %s", runtime.kind.value, job.id)
        return expired

    async def _maintenance_loop(self, runtime: KindRuntime) -> None:
        while True:
            await asyncio.sleep(runtime.settings.stalled_interval)
            for job in await runtime.queue.reclaim_stalled():
                if job.state == JobState.FAILED:
                    runtime.processor.schedule_failure_cleanup(job, CleanupReason.MAX_RETRIES_EXCEEDED)
                runtime.stats.job_reclaimed(failed=job.state == JobState.FAILED)
            try:
                await self.expire_artifacts(runtime)
            except Exception:
                logger.exception("[%s] Artifact expiry failed", runtime.kind.value)

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        for runtime in self._runtimes.values():
            runtime.cleanup.start()
            await runtime.pool.start()
            runtime.maintenance_task = asyncio.create_task(
                self._maintenance_loop(runtime), name=f"maintenance-{runtime.kind.value}"
            )
        logger.info("Media pipeline started")

    async def stop(self, drain_timeout: float = SHUTDOWN_DRAIN_SECONDS) -> None:
        """Stop claiming, drain in-flight jobs, then run a final cleanup sweep."""
        if not self._started:
            return
        self._started = False

        await asyncio.gather(*(r.pool.stop(drain_timeout) for r in self._runtimes.values()))

        maintenance_tasks: List[asyncio.Task] = []
        for runtime in self._runtimes.values():
            if runtime.maintenance_task is not None:
                runtime.maintenance_task.cancel()
                maintenance_tasks.append(runtime.maintenance_task)
                runtime.maintenance_task = None
        await asyncio.gather(*maintenance_tasks, return_exceptions=True)

        for runtime in self._runtimes.values():
            await runtime.cleanup.stop()
        logger.info("Media pipeline stopped")

