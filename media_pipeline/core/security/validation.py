"""
Upload Validation Gate

Rejects malformed or unsafe uploads before a job is created. Checks run in
a fixed order and stop at the first failure.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from media_pipeline.core.errors import ErrorCode, ValidationFault
from media_pipeline.core.operations import MediaKind
from media_pipeline.core.security import constants as c
from media_pipeline.core.security.signatures import (
    IMAGE_SIGNATURES,
    VIDEO_SIGNATURES,
    find_dangerous_signature,
    matches_signature,
)
from media_pipeline.core.utils.ffmpeg import VideoProbe

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_JOB_ID_PATTERN = re.compile(r"^(img|vid)-[a-f0-9]{8,64}$")


@dataclass(frozen=True)
class _KindRules:
    min_size: int
    max_size: int
    mime_types: frozenset
    extensions: frozenset
    mime_extensions: dict
    signatures: dict
    signature_window: int


_RULES = {
    MediaKind.IMAGE: _KindRules(
        min_size=c.IMAGE_MIN_SIZE,
        max_size=c.IMAGE_MAX_SIZE,
        mime_types=c.IMAGE_MIME_TYPES,
        extensions=c.IMAGE_EXTENSIONS,
        mime_extensions=c.IMAGE_MIME_EXTENSIONS,
        signatures=IMAGE_SIGNATURES,
        signature_window=c.IMAGE_SIGNATURE_WINDOW,
    ),
    MediaKind.VIDEO: _KindRules(
        min_size=c.VIDEO_MIN_SIZE,
        max_size=c.VIDEO_MAX_SIZE,
        mime_types=c.VIDEO_MIME_TYPES,
        extensions=c.VIDEO_EXTENSIONS,
        mime_extensions=c.VIDEO_MIME_EXTENSIONS,
        signatures=VIDEO_SIGNATURES,
        signature_window=c.VIDEO_SIGNATURE_WINDOW,
    ),
}


@dataclass(frozen=True)
class ValidatedUpload:
    media_type: str
    extension: str
    file_size: int


def _format_mb(size: int) -> str:
    return f"{size / c.MB:.1f}MB"


def validate_filename(name: str) -> str:
    """Filename must be non-empty, at most 255 chars and free of control characters."""
    if not name or not isinstance(name, str) or not name.strip():
        raise ValidationFault("Filename is required", ErrorCode.INVALID_FILENAME, field="filename")

    if len(name) > c.MAX_FILENAME_LENGTH:
        raise ValidationFault(
            f"Filename exceeds maximum length of {c.MAX_FILENAME_LENGTH}",
            ErrorCode.FILENAME_TOO_LONG,
            field="filename",
        )

    if _CONTROL_CHARS.search(name):
        raise ValidationFault(
            "Filename contains control characters",
            ErrorCode.INVALID_FILENAME,
            field="filename",
        )

    return name.strip()


def validate_upload(
    kind: MediaKind,
    path: Path,
    original_name: str,
    declared_size: int,
    media_type: str,
    probe: Optional[VideoProbe] = None,
) -> ValidatedUpload:
    """
    Run every gate check for ``kind``.

    Raises:
        ValidationFault: On the first failing check.
    """
    rules = _RULES[kind]
    name = validate_filename(original_name)

    if declared_size < rules.min_size:
        raise ValidationFault(
            f"File too small. Minimum size: {rules.min_size} bytes",
            ErrorCode.FILE_TOO_SMALL,
            field="size",
        )
    if declared_size > rules.max_size:
        raise ValidationFault(
            f"File too large. Maximum size: {_format_mb(rules.max_size)}",
            ErrorCode.FILE_TOO_LARGE,
            field="size",
        )

    media_type = (media_type or "").strip().lower()
    if media_type not in rules.mime_types:
        raise ValidationFault(
            f"Unsupported media type: {media_type or 'unknown'}",
            ErrorCode.UNSUPPORTED_MIME_TYPE,
            field="media_type",
        )

    extension = Path(name).suffix.lower()
    if extension in c.DANGEROUS_EXTENSIONS:
        raise ValidationFault(
            f"File extension not allowed: {extension}",
            ErrorCode.DANGEROUS_EXTENSION,
            field="filename",
        )
    if extension not in rules.extensions:
        raise ValidationFault(
            f"Unsupported file extension: {extension or '(none)'}",
            ErrorCode.INVALID_EXTENSION,
            field="filename",
        )

    if extension not in rules.mime_extensions.get(media_type, ()):
        raise ValidationFault(
            f"File extension {extension} does not match media type {media_type}",
            ErrorCode.TYPE_MISMATCH,
            field="filename",
        )

    path = Path(path)
    if not path.is_file():
        raise ValidationFault("Uploaded file not found", ErrorCode.FILE_NOT_FOUND, field="file")

    file_size = path.stat().st_size
    if file_size == 0:
        raise ValidationFault("Uploaded file is empty", ErrorCode.EMPTY_FILE, field="file")

    with path.open("rb") as fh:
        head = fh.read(rules.signature_window)

    if not matches_signature(media_type, head, rules.signatures):
        raise ValidationFault(
            "File content does not match its declared type",
            ErrorCode.INVALID_FILE_HEADER,
            field="file",
        )

    marker = find_dangerous_signature(head)
    if marker is not None:
        logger.warning("Rejected upload %r: dangerous signature %r", name, marker)
        raise ValidationFault(
            "File contains potentially malicious content",
            ErrorCode.MALICIOUS_CONTENT,
            field="file",
        )

    if kind == MediaKind.VIDEO and probe is not None:
        validate_video_probe(probe)

    return ValidatedUpload(media_type=media_type, extension=extension, file_size=file_size)


def validate_video_probe(probe: VideoProbe) -> None:
    """Duration, resolution and aspect ratio bounds for a probed video."""
    if probe.duration < c.VIDEO_MIN_DURATION:
        raise ValidationFault(
            f"Video too short. Minimum duration: {c.VIDEO_MIN_DURATION:g}s",
            ErrorCode.VIDEO_TOO_SHORT,
            field="duration",
        )
    if probe.duration > c.VIDEO_MAX_DURATION:
        raise ValidationFault(
            f"Video too long. Maximum duration: {c.VIDEO_MAX_DURATION / 60:g} minutes",
            ErrorCode.VIDEO_TOO_LONG,
            field="duration",
        )

    if probe.width < c.VIDEO_MIN_WIDTH or probe.height < c.VIDEO_MIN_HEIGHT:
        raise ValidationFault(
            f"Resolution too low. Minimum: {c.VIDEO_MIN_WIDTH}x{c.VIDEO_MIN_HEIGHT}",
            ErrorCode.RESOLUTION_TOO_LOW,
            field="resolution",
        )
    if probe.width > c.VIDEO_MAX_WIDTH or probe.height > c.VIDEO_MAX_HEIGHT:
        raise ValidationFault(
            f"Resolution too high. Maximum: {c.VIDEO_MAX_WIDTH}x{c.VIDEO_MAX_HEIGHT}",
            ErrorCode.RESOLUTION_TOO_HIGH,
            field="resolution",
        )

    ratio = probe.aspect_ratio
    if not c.VIDEO_MIN_ASPECT_RATIO <= ratio <= c.VIDEO_MAX_ASPECT_RATIO:
        raise ValidationFault(
            f"Invalid aspect ratio: {ratio:.2f}",
            ErrorCode.INVALID_ASPECT_RATIO,
            field="resolution",
        )


def sanitize_filename(name: str, max_length: int = 100) -> str:
    """
    Build a safe storage name from a client filename.

    Keeps the extension, replaces anything outside ``[a-zA-Z0-9._-]`` and
    prefixes a random token so names never collide.
    """
    path = Path(name or "upload")
    stem = _UNSAFE_NAME_CHARS.sub("_", path.stem).strip("._") or "upload"
    suffix = _UNSAFE_NAME_CHARS.sub("", path.suffix.lower())
    return f"{secrets.token_hex(6)}_{stem[:max_length]}{suffix}"


def validate_job_id(job_id: str) -> str:
    """Job ids are generated server side; anything else is rejected."""
    if not job_id or not _JOB_ID_PATTERN.match(job_id):
        raise ValidationFault("Invalid job ID format", ErrorCode.INVALID_JOB_ID, field="job_id")
    return job_id
