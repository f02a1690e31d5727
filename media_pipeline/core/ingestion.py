"""
Admission of stored uploads as jobs.

An upload that fails the gate or the plan builder is deleted before the
error reaches the caller, so rejected files never linger in the upload
directory.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from media_pipeline.config import MAX_ATTEMPTS, WATERMARK_DIR
from media_pipeline.core.engines import ImageEngine, TransformEngine, VideoEngine
from media_pipeline.core.errors import MediaPipelineError, UnsupportedFormatFault, ValidationFault
from media_pipeline.core.models import Job, JobSubmission
from media_pipeline.core.operations import MediaKind
from media_pipeline.core.plan_builder import FileContext, build_plan
from media_pipeline.core.priority import (
    classify_priority,
    estimate_image_processing_time,
    estimate_video_duration,
    estimate_video_processing_time,
)
from media_pipeline.core.queue import JobQueue
from media_pipeline.core.security import validate_upload, validate_video_probe
from media_pipeline.core.utils.ffmpeg import VideoProbe

logger = logging.getLogger(__name__)

JOB_ID_PREFIXES = {MediaKind.IMAGE: "img", MediaKind.VIDEO: "vid"}


def new_job_id(kind: MediaKind) -> str:
    return f"{JOB_ID_PREFIXES[kind]}-{uuid.uuid4().hex}"


def kind_for_job_id(job_id: str) -> Optional[MediaKind]:
    prefix = job_id.split("-", 1)[0]
    for kind, value in JOB_ID_PREFIXES.items():
        if value == prefix:
            return kind
    return None


@dataclass(frozen=True)
class Admission:
    job: Job
    position: Optional[int]
    estimated_processing_time: str


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not delete rejected upload %s: %s", path, exc)


async def _probe(kind: MediaKind, engine: TransformEngine, path: Path, context: FileContext) -> FileContext:
    """Fill in dimensions or duration; a probe failure leaves the context as is."""
    if kind == MediaKind.IMAGE:
        try:
            info = await asyncio.to_thread(engine.inspect, path)
        except MediaPipelineError as exc:
            logger.warning("Could not read dimensions of %s: %s", path.name, exc.message)
            return context
        return FileContext(
            size=context.size,
            media_type=context.media_type,
            width=info.width,
            height=info.height,
            watermark_dir=context.watermark_dir,
        )

    if not isinstance(engine, VideoEngine):
        return context
    try:
        probe: VideoProbe = await asyncio.to_thread(engine.probe, path)
    except MediaPipelineError as exc:
        logger.warning("Could not probe %s, estimating duration from size: %s", path.name, exc.message)
        return context
    validate_video_probe(probe)
    return FileContext(
        size=context.size,
        media_type=context.media_type,
        width=probe.width,
        height=probe.height,
        duration=probe.duration,
        watermark_dir=context.watermark_dir,
    )


async def admit(
    kind: MediaKind,
    submission: JobSubmission,
    engine: TransformEngine,
    queue: JobQueue,
    max_attempts: int = MAX_ATTEMPTS,
    watermark_dir: Path = WATERMARK_DIR,
) -> Admission:
    """
    Validate, plan and enqueue one stored upload.

    Raises:
        ValidationFault: The upload or its operations were rejected.
        UnsupportedFormatFault: The requested output format is not available.
    """
    source = Path(submission.source_path)
    try:
        validated = validate_upload(
            kind,
            source,
            submission.original_name,
            submission.declared_size,
            submission.media_type,
        )
        context = FileContext(
            size=validated.file_size,
            media_type=validated.media_type,
            watermark_dir=watermark_dir,
        )
        context = await _probe(kind, engine, source, context)
        plan = build_plan(kind, submission.operations, context)
    except (ValidationFault, UnsupportedFormatFault) as exc:
        logger.info("Rejected %s upload %r: %s (%s)", kind.value, submission.original_name, exc.message, exc.code.value)
        _discard(source)
        raise
    except BaseException:
        _discard(source)
        raise

    duration = context.duration
    if kind == MediaKind.VIDEO and duration is None:
        duration = estimate_video_duration(validated.file_size)

    if submission.priority_hint is not None:
        priority = submission.priority_hint
    else:
        priority = classify_priority(kind, validated.file_size, plan.requested_count, duration)

    job = Job(
        id=new_job_id(kind),
        kind=kind,
        source_path=str(source),
        original_name=submission.original_name,
        declared_size=validated.file_size,
        media_type=validated.media_type,
        submitted_at=submission.submitted_at,
        plan=plan,
        priority=priority,
        max_attempts=max(1, max_attempts),
        estimated_duration=duration,
    )
    await queue.enqueue(job)

    if kind == MediaKind.IMAGE:
        estimate = estimate_image_processing_time(validated.file_size, plan)
    else:
        estimate = estimate_video_processing_time(validated.file_size, duration or 0.0, plan)

    return Admission(job=job, position=await queue.position(job.id), estimated_processing_time=estimate)


def default_engine(kind: MediaKind) -> TransformEngine:
    return ImageEngine() if kind == MediaKind.IMAGE else VideoEngine()
