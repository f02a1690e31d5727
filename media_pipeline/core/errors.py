"""
Fault taxonomy for the media pipeline.

Every failure that can reach a job or an API client is one of these
exceptions. Each carries a stable error code, a human readable message
and whether a job hitting it may be retried.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable, user-visible error codes."""

    # Upload gate
    INVALID_FILENAME = "INVALID_FILENAME"
    FILENAME_TOO_LONG = "FILENAME_TOO_LONG"
    FILE_TOO_SMALL = "FILE_TOO_SMALL"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    UNSUPPORTED_MIME_TYPE = "UNSUPPORTED_MIME_TYPE"
    INVALID_EXTENSION = "INVALID_EXTENSION"
    DANGEROUS_EXTENSION = "DANGEROUS_EXTENSION"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    EMPTY_FILE = "EMPTY_FILE"
    INVALID_FILE_HEADER = "INVALID_FILE_HEADER"
    MALICIOUS_CONTENT = "MALICIOUS_CONTENT"
    VIDEO_TOO_SHORT = "VIDEO_TOO_SHORT"
    VIDEO_TOO_LONG = "VIDEO_TOO_LONG"
    RESOLUTION_TOO_LOW = "RESOLUTION_TOO_LOW"
    RESOLUTION_TOO_HIGH = "RESOLUTION_TOO_HIGH"
    INVALID_ASPECT_RATIO = "INVALID_ASPECT_RATIO"

    # Operation plan
    INVALID_OPERATIONS = "INVALID_OPERATIONS"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    TOO_MANY_OPERATIONS = "TOO_MANY_OPERATIONS"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    UNSUPPORTED_CONVERSION = "UNSUPPORTED_CONVERSION"
    INVALID_CROP = "INVALID_CROP"
    INVALID_RESIZE = "INVALID_RESIZE"
    INVALID_TRIM = "INVALID_TRIM"
    INVALID_WATERMARK = "INVALID_WATERMARK"
    INVALID_PLAN = "INVALID_PLAN"

    # Processing
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"
    IMAGE_TOO_SMALL = "IMAGE_TOO_SMALL"
    CORRUPTED_INPUT = "CORRUPTED_INPUT"
    UNSUPPORTED_CODEC = "UNSUPPORTED_CODEC"
    EMPTY_OUTPUT = "EMPTY_OUTPUT"
    ZERO_DIMENSIONS = "ZERO_DIMENSIONS"
    PROCESSING_TIMEOUT = "PROCESSING_TIMEOUT"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    TRANSIENT_IO = "TRANSIENT_IO"
    ENGINE_ERROR = "ENGINE_ERROR"
    ENGINE_UNAVAILABLE = "ENGINE_UNAVAILABLE"
    STORAGE_ERROR = "STORAGE_ERROR"

    # Service
    INVALID_JOB_ID = "INVALID_JOB_ID"
    MISSING_JOB_IDS = "MISSING_JOB_IDS"
    TOO_MANY_JOB_IDS = "TOO_MANY_JOB_IDS"
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    ARTIFACT_NOT_READY = "ARTIFACT_NOT_READY"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class FaultKind(str, Enum):
    """Whether a transform failure is caused by the input or the environment."""

    INPUT = "input"
    ENVIRONMENT = "environment"


class MediaPipelineError(Exception):
    """Base exception for every pipeline failure."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class ValidationFault(MediaPipelineError):
    """Malformed or unsafe input. Never retried."""

    code = ErrorCode.INVALID_OPERATIONS
    status_code = 400

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if field:
            details.setdefault("field", field)
        self.field = field
        super().__init__(message, code=code, details=details)


class UnsupportedFormatFault(MediaPipelineError):
    """Input or requested output format cannot be handled."""

    code = ErrorCode.UNSUPPORTED_FORMAT
    status_code = 415


class ResourceLimitFault(MediaPipelineError):
    """Size, dimension or duration exceeds a configured limit."""

    code = ErrorCode.IMAGE_TOO_LARGE
    status_code = 413


class MissingInputFault(MediaPipelineError):
    """Source file disappeared before or during processing."""

    code = ErrorCode.FILE_NOT_FOUND
    status_code = 404


class TransientIOFault(MediaPipelineError):
    """Temporary I/O failure; a later attempt may succeed."""

    code = ErrorCode.TRANSIENT_IO
    status_code = 503
    retryable = True


class TimeoutFault(MediaPipelineError):
    """Processing exceeded its time budget."""

    code = ErrorCode.PROCESSING_TIMEOUT
    status_code = 504
    retryable = True


class ResourceExhaustionFault(MediaPipelineError):
    """Memory or other process resources ran out."""

    code = ErrorCode.RESOURCE_EXHAUSTED
    status_code = 503
    retryable = True


class EngineFault(MediaPipelineError):
    """
    Failure reported by a transform engine.

    Retryable unless the engine marks it as caused by the input.
    """

    code = ErrorCode.ENGINE_ERROR
    status_code = 422

    def __init__(
        self,
        message: str,
        kind: FaultKind = FaultKind.ENVIRONMENT,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.kind = kind
        super().__init__(message, code=code, details=details)

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.kind == FaultKind.ENVIRONMENT


class OutputIntegrityFault(MediaPipelineError):
    """Engine reported success but the artifact is empty or has no pixels."""

    code = ErrorCode.EMPTY_OUTPUT
    status_code = 422


class JobNotFoundError(MediaPipelineError):
    """Requested job id is unknown to the queue."""

    code = ErrorCode.JOB_NOT_FOUND
    status_code = 404


class ArtifactNotReadyError(MediaPipelineError):
    """Download requested for a job that has no artifact."""

    code = ErrorCode.ARTIFACT_NOT_READY
    status_code = 409


class InvalidTransition(MediaPipelineError):
    """A job state change not allowed by the state machine."""

    code = ErrorCode.INVALID_TRANSITION
    status_code = 409
