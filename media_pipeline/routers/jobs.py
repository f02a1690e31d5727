"""
Job status and artifact download.

  GET /api/jobs?ids=a,b,c          - status of several jobs at once
  GET /api/jobs/{job_id}           - status view
  GET /api/jobs/{job_id}/download  - file (local storage) or redirect (R2)
"""

from pathlib import Path
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse, RedirectResponse, Response

from media_pipeline.core.errors import (
    ArtifactNotReadyError,
    ErrorCode,
    MediaPipelineError,
    MissingInputFault,
    ValidationFault,
)
from media_pipeline.core.models import JobState, JobStatusView
from media_pipeline.core.pipeline import MediaPipeline
from media_pipeline.core.storage import content_type_for
from media_pipeline.routers.deps import get_pipeline
from media_pipeline.schemas import BulkJobEntry, BulkStatusResponse, ErrorDetail, JobStatusResponse

router = APIRouter(prefix="/api/jobs", tags=["Jobs"])

MAX_BULK_JOB_IDS = 50


def parse_job_ids(raw: Optional[str]) -> List[str]:
    """Split a comma separated id list, dropping blanks and repeats."""
    job_ids = list(dict.fromkeys(part.strip() for part in (raw or "").split(",") if part.strip()))
    if not job_ids:
        raise ValidationFault("Provide at least one job id in ids", ErrorCode.MISSING_JOB_IDS, field="ids")
    if len(job_ids) > MAX_BULK_JOB_IDS:
        raise ValidationFault(
            f"Too many job ids. Maximum: {MAX_BULK_JOB_IDS}",
            ErrorCode.TOO_MANY_JOB_IDS,
            field="ids",
            details={"requested": len(job_ids), "maximum": MAX_BULK_JOB_IDS},
        )
    return job_ids


def status_response(view: JobStatusView, pipeline: MediaPipeline) -> JobStatusResponse:
    download_url = f"/api/jobs/{view.job_id}/download" if pipeline.artifact_available(view) else None
    return JobStatusResponse(**view.model_dump(), download_url=download_url)


@router.get("", response_model=BulkStatusResponse)
async def get_job_statuses(
    ids: Optional[str] = Query(default=None, description="Comma separated job ids"),
    pipeline: MediaPipeline = Depends(get_pipeline),
) -> BulkStatusResponse:
    results = await pipeline.statuses(parse_job_ids(ids))
    jobs: Dict[str, BulkJobEntry] = {}
    for job_id, outcome in results.items():
        if isinstance(outcome, MediaPipelineError):
            jobs[job_id] = BulkJobEntry(
                found=False,
                error=ErrorDetail(code=outcome.code.value, message=outcome.message, details=outcome.details),
            )
        else:
            jobs[job_id] = BulkJobEntry(found=True, job=status_response(outcome, pipeline))
    return BulkStatusResponse(jobs=jobs)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, pipeline: MediaPipeline = Depends(get_pipeline)) -> JobStatusResponse:
    return status_response(await pipeline.status(job_id), pipeline)


@router.get("/{job_id}/download")
async def download_artifact(job_id: str, pipeline: MediaPipeline = Depends(get_pipeline)) -> Response:
    job = await pipeline.get_job(job_id)
    if job.state != JobState.COMPLETED or job.result is None:
        raise ArtifactNotReadyError(
            f"Job {job_id} is {job.state.value}",
            details={"job_id": job_id, "state": job.state.value},
        )
    if job.artifact_expired:
        raise MissingInputFault("Artifact has expired", code=ErrorCode.FILE_NOT_FOUND)

    ref = job.result.output_ref
    url = pipeline.storage.url_for(ref)
    if url:
        return RedirectResponse(url, status_code=307)

    path = pipeline.storage.local_path(ref)
    if path is None:
        raise MissingInputFault("Artifact is no longer available", code=ErrorCode.FILE_NOT_FOUND)

    download_name = f"{Path(job.original_name).stem}_processed{path.suffix}"
    return FileResponse(path, media_type=content_type_for(path), filename=download_name)
