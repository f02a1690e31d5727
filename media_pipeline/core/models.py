"""
Job, result and submission models.

Jobs are pydantic models so they can be persisted and returned through the
API unchanged; cleanup tasks are plain dataclasses that never leave the
process.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from media_pipeline.core.operations import MediaKind, OperationPlan


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class Priority(IntEnum):
    """Scheduling priority; higher values are claimed first."""

    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 15


class CleanupReason(str, Enum):
    COMPLETED = "completed"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    UNRECOVERABLE_ERROR = "unrecoverable_error"


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------

class MediaDescriptor(BaseModel):
    """Describes a produced artifact. Images fill width/height, videos duration/codec/fps."""

    model_config = ConfigDict(frozen=True)

    format: str
    width: Optional[int] = None
    height: Optional[int] = None
    channels: Optional[int] = None
    has_alpha: Optional[bool] = None
    duration: Optional[float] = None
    codec: Optional[str] = None
    fps: Optional[float] = None


class ProcessingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    output_ref: str = Field(..., description="Storage location of the artifact")
    output_path: str
    original_size: int = Field(..., ge=0)
    output_size: int = Field(..., ge=0)
    media: MediaDescriptor
    processing_time_ms: int = Field(..., ge=0)
    operations: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def compression_ratio(self) -> float:
        if not self.original_size:
            return 0.0
        return round((1 - self.output_size / self.original_size) * 100, 2)


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------

class JobSubmission(BaseModel):
    """What the ingestion layer hands to the pipeline for a stored upload."""

    source_path: str
    original_name: str
    declared_size: int = Field(..., ge=0)
    media_type: str
    submitted_at: datetime = Field(default_factory=utcnow)
    operations: Dict[str, Any] = Field(default_factory=dict)
    priority_hint: Optional[Priority] = None


class Job(BaseModel):
    id: str
    kind: MediaKind
    source_path: str
    original_name: str
    declared_size: int
    media_type: str
    submitted_at: datetime
    plan: OperationPlan
    priority: Priority = Priority.NORMAL
    max_attempts: int = Field(default=3, ge=1)
    attempts_made: int = 0
    state: JobState = JobState.WAITING
    progress: int = Field(default=0, ge=0, le=100)
    result: Optional[ProcessingResult] = None
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    estimated_duration: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    # Epoch seconds before which the job may not be claimed (retry backoff)
    available_at: float = 0.0
    # Identifies the current claim; writes from any other claim are rejected
    claim_token: Optional[str] = None
    # Set once the retention purge has deleted the stored artifact
    artifact_expired: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts_made)

    def to_status(self) -> "JobStatusView":
        return JobStatusView(
            job_id=self.id,
            kind=self.kind,
            state=self.state,
            progress=self.progress,
            priority=self.priority.name,
            attempts_made=self.attempts_made,
            max_attempts=self.max_attempts,
            attempts_remaining=self.attempts_remaining,
            original_name=self.original_name,
            file_size=self.declared_size,
            operations=self.plan.descriptors(),
            result=self.result,
            compression_ratio=self.result.compression_ratio if self.result else None,
            artifact_expired=self.artifact_expired,
            failure_code=self.failure_code,
            failure_reason=self.failure_reason,
            created_at=self.created_at,
            processed_at=self.processed_at,
        )


class JobStatusView(BaseModel):
    """Read-only projection of a job for status queries."""

    job_id: str
    kind: MediaKind
    state: JobState
    progress: int
    priority: str
    attempts_made: int
    max_attempts: int
    attempts_remaining: int
    original_name: str
    file_size: int
    operations: List[str] = Field(default_factory=list)
    result: Optional[ProcessingResult] = None
    # Percent saved relative to the upload; negative when the output grew
    compression_ratio: Optional[float] = None
    artifact_expired: bool = False
    failure_code: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None


# -----------------------------------------------------------------------------
# Cleanup
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class CleanupTask:
    path: str
    job_id: str
    reason: CleanupReason
    scheduled_at: datetime = field(default_factory=utcnow)
