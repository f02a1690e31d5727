"""
Security module for the media pipeline.

Provides:
- Upload validation gate
- Magic-number and dangerous-content signatures
- Filename sanitization
- Request ID tracking
"""

from media_pipeline.core.security.constants import (
    DANGEROUS_EXTENSIONS,
    IMAGE_CONVERSION_MATRIX,
    IMAGE_MAX_SIZE,
    IMAGE_MIN_SIZE,
    MAX_FILENAME_LENGTH,
    REQUEST_ID_HEADER,
    VIDEO_MAX_SIZE,
    VIDEO_MIN_SIZE,
)
from media_pipeline.core.security.validation import (
    ValidatedUpload,
    sanitize_filename,
    validate_filename,
    validate_job_id,
    validate_upload,
    validate_video_probe,
)
from media_pipeline.core.security.utils import (
    generate_request_id,
    get_request_id,
)

__all__ = [
    # Constants
    "DANGEROUS_EXTENSIONS",
    "IMAGE_CONVERSION_MATRIX",
    "IMAGE_MAX_SIZE",
    "IMAGE_MIN_SIZE",
    "MAX_FILENAME_LENGTH",
    "REQUEST_ID_HEADER",
    "VIDEO_MAX_SIZE",
    "VIDEO_MIN_SIZE",
    # Validation
    "ValidatedUpload",
    "sanitize_filename",
    "validate_filename",
    "validate_job_id",
    "validate_upload",
    "validate_video_probe",
    # Utils
    "generate_request_id",
    "get_request_id",
]
