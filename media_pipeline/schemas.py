"""
Pydantic models for API responses.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from media_pipeline.core.models import JobState, JobStatusView, utcnow
from media_pipeline.core.operations import MediaKind


class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        populate_by_name=True,
    )


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

class ErrorDetail(BaseSchema):
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseSchema):
    """Standard error envelope."""
    error: ErrorDetail


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------

class SubmissionResponse(BaseSchema):
    """Returned with 202 when an upload is accepted."""
    job_id: str = Field(..., serialization_alias="jobId")
    kind: MediaKind
    state: JobState = JobState.WAITING
    priority: str
    queue_position: Optional[int] = Field(default=None, serialization_alias="queuePosition")
    estimated_processing_time: str = Field(..., serialization_alias="estimatedProcessingTime")
    operations: List[str] = Field(default_factory=list)
    status_url: str = Field(..., serialization_alias="statusUrl")


class JobStatusResponse(JobStatusView):
    download_url: Optional[str] = Field(default=None, serialization_alias="downloadUrl")


class BulkJobEntry(BaseSchema):
    found: bool
    job: Optional[JobStatusResponse] = None
    error: Optional[ErrorDetail] = None


class BulkStatusResponse(BaseSchema):
    """Per-id status; unknown or malformed ids carry an error instead of failing the request."""
    jobs: Dict[str, BulkJobEntry]


# -----------------------------------------------------------------------------
# Operation previews
# -----------------------------------------------------------------------------

class OperationsPreviewRequest(BaseSchema):
    operations: Dict[str, Any] = Field(default_factory=dict)
    media_type: Optional[str] = Field(default=None, alias="mediaType")
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)
    duration: Optional[float] = Field(default=None, gt=0)


class OperationsPreviewResponse(BaseSchema):
    """The canonical plan an upload with these operations would run."""
    valid: bool = True
    kind: MediaKind
    operations: List[str]
    requested_count: int = Field(..., serialization_alias="requestedCount")
    output_format: str = Field(..., serialization_alias="outputFormat")


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------

class HealthResponse(BaseSchema):
    """Health check response."""
    status: str = "healthy"
    version: str
    timestamp: datetime = Field(default_factory=utcnow)
    uptime: float = 0.0
    processed: int = 0
    failed: int = 0
    avg_processing_time_ms: float = Field(default=0.0, serialization_alias="avgProcessingTimeMs")
    queue_depth: int = Field(default=0, serialization_alias="queueDepth")
