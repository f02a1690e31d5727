"""
Upload endpoints.

  POST /api/images  - multipart image upload, returns 202 with a job
  POST /api/videos  - multipart video upload, returns 202 with a job
  POST /api/images/validate-operations  - dry run of the image plan builder
  POST /api/videos/validate-operations  - dry run of the video plan builder

``operations`` is a JSON object encoded as a form field; ``priority`` is an
optional priority name (``low``, ``normal``, ``high``, ``critical``).
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile, status

from media_pipeline.config import MAX_UPLOAD_BYTES, UPLOAD_CHUNK_SIZE
from media_pipeline.core.errors import ErrorCode, ResourceLimitFault, ValidationFault
from media_pipeline.core.models import JobSubmission, Priority
from media_pipeline.core.operations import MediaKind
from media_pipeline.core.pipeline import MediaPipeline
from media_pipeline.core.security import IMAGE_MAX_SIZE, VIDEO_MAX_SIZE, sanitize_filename
from media_pipeline.routers.deps import get_pipeline
from media_pipeline.schemas import OperationsPreviewRequest, OperationsPreviewResponse, SubmissionResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Uploads"])

_SIZE_CAPS = {
    MediaKind.IMAGE: min(IMAGE_MAX_SIZE, MAX_UPLOAD_BYTES),
    MediaKind.VIDEO: min(VIDEO_MAX_SIZE, MAX_UPLOAD_BYTES),
}

_PREVIEW_MEDIA_TYPES = {
    MediaKind.IMAGE: "image/jpeg",
    MediaKind.VIDEO: "video/mp4",
}


def parse_operations(raw: Optional[str]) -> Dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        operations = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationFault(
            f"Operations must be valid JSON ({exc.msg})",
            ErrorCode.INVALID_OPERATIONS,
            field="operations",
        ) from exc
    if not isinstance(operations, dict):
        raise ValidationFault("Operations must be a JSON object", ErrorCode.INVALID_OPERATIONS, field="operations")
    return operations


def parse_priority(raw: Optional[str]) -> Optional[Priority]:
    if raw is None or not raw.strip():
        return None
    value = raw.strip().upper()
    if value in Priority.__members__:
        return Priority[value]
    try:
        return Priority(int(value))
    except ValueError:
        raise ValidationFault(
            f"Unknown priority: {raw}. Use one of: {', '.join(p.name.lower() for p in Priority)}",
            ErrorCode.INVALID_OPERATIONS,
            field="priority",
        ) from None


async def save_upload(file: UploadFile, destination: Path, max_bytes: int) -> int:
    """Stream ``file`` to ``destination`` in chunks, enforcing ``max_bytes``."""
    total = 0
    try:
        with destination.open("wb") as dst:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise ResourceLimitFault(
                        f"File too large. Maximum size: {max_bytes // (1024 * 1024)}MB",
                        code=ErrorCode.FILE_TOO_LARGE,
                    )
                dst.write(chunk)
    except BaseException:
        destination.unlink(missing_ok=True)
        raise
    finally:
        await file.close()
    return total


async def _submit(
    kind: MediaKind,
    request: Request,
    file: UploadFile,
    operations: Optional[str],
    priority: Optional[str],
    pipeline: MediaPipeline,
) -> SubmissionResponse:
    raw_operations = parse_operations(operations)
    priority_hint = parse_priority(priority)

    original_name = file.filename or "upload"
    destination = pipeline.upload_dir / sanitize_filename(original_name)
    written = await save_upload(file, destination, _SIZE_CAPS[kind])

    logger.info(
        "Received %s upload %r (%d bytes) | request_id=%s",
        kind.value, original_name, written, getattr(request.state, "request_id", "unknown"),
    )

    admission = await pipeline.submit(
        kind,
        JobSubmission(
            source_path=str(destination),
            original_name=original_name,
            declared_size=file.size if file.size is not None else written,
            media_type=file.content_type or "",
            operations=raw_operations,
            priority_hint=priority_hint,
        ),
    )
    job = admission.job
    return SubmissionResponse(
        job_id=job.id,
        kind=job.kind,
        state=job.state,
        priority=job.priority.name.lower(),
        queue_position=admission.position,
        estimated_processing_time=admission.estimated_processing_time,
        operations=job.plan.descriptors(),
        status_url=f"/api/jobs/{job.id}",
    )


@router.post("/images", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_image(
    request: Request,
    file: UploadFile = File(...),
    operations: Optional[str] = Form(default=None),
    priority: Optional[str] = Form(default=None),
    pipeline: MediaPipeline = Depends(get_pipeline),
) -> SubmissionResponse:
    """Queue an image transformation job."""
    return await _submit(MediaKind.IMAGE, request, file, operations, priority, pipeline)


@router.post("/videos", response_model=SubmissionResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_video(
    request: Request,
    file: UploadFile = File(...),
    operations: Optional[str] = Form(default=None),
    priority: Optional[str] = Form(default=None),
    pipeline: MediaPipeline = Depends(get_pipeline),
) -> SubmissionResponse:
    """Queue a video transformation job."""
    return await _submit(MediaKind.VIDEO, request, file, operations, priority, pipeline)


def _preview(kind: MediaKind, body: OperationsPreviewRequest, pipeline: MediaPipeline) -> OperationsPreviewResponse:
    plan = pipeline.preview_plan(
        kind,
        body.operations,
        media_type=body.media_type or _PREVIEW_MEDIA_TYPES[kind],
        width=body.width,
        height=body.height,
        duration=body.duration,
    )
    return OperationsPreviewResponse(
        kind=kind,
        operations=plan.descriptors(),
        requested_count=plan.requested_count,
        output_format=plan.output_format,
    )


@router.post("/images/validate-operations", response_model=OperationsPreviewResponse)
async def validate_image_operations(
    body: OperationsPreviewRequest,
    pipeline: MediaPipeline = Depends(get_pipeline),
) -> OperationsPreviewResponse:
    """Check image operations without uploading a file."""
    return _preview(MediaKind.IMAGE, body, pipeline)


@router.post("/videos/validate-operations", response_model=OperationsPreviewResponse)
async def validate_video_operations(
    body: OperationsPreviewRequest,
    pipeline: MediaPipeline = Depends(get_pipeline),
) -> OperationsPreviewResponse:
    """Check video operations without uploading a file."""
    return _preview(MediaKind.VIDEO, body, pipeline)
