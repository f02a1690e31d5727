"""
Priority classification and processing-time estimates.

Everything here is a pure function of the job's size, operation count and
(for video) duration.
"""

import math
from typing import Optional

from media_pipeline.core.models import Priority
from media_pipeline.core.operations import (
    Crop,
    Encode,
    MediaKind,
    OperationPlan,
    Resize,
    Rotate,
    Blur,
    TextWatermark,
    ImageWatermark,
    Trim,
)
from media_pipeline.core.security.constants import MB

IMAGE_LARGE_FILE_THRESHOLD = 10 * MB
IMAGE_COMPLEX_OPERATIONS_THRESHOLD = 2

VIDEO_SMALL_FILE_THRESHOLD = 50 * MB
VIDEO_LARGE_FILE_THRESHOLD = 100 * MB
VIDEO_LONG_DURATION_SECONDS = 1800


def classify_image_priority(size: int, operation_count: int) -> Priority:
    if size > IMAGE_LARGE_FILE_THRESHOLD:
        return Priority.LOW
    if operation_count > IMAGE_COMPLEX_OPERATIONS_THRESHOLD:
        return Priority.HIGH
    return Priority.NORMAL


def classify_video_priority(size: int, estimated_duration: Optional[float] = None) -> Priority:
    if size < VIDEO_SMALL_FILE_THRESHOLD:
        return Priority.HIGH
    if size > VIDEO_LARGE_FILE_THRESHOLD:
        return Priority.LOW
    if estimated_duration is not None and estimated_duration > VIDEO_LONG_DURATION_SECONDS:
        return Priority.LOW
    return Priority.NORMAL


def classify_priority(
    kind: MediaKind,
    size: int,
    operation_count: int,
    estimated_duration: Optional[float] = None,
) -> Priority:
    """Scheduling priority for a new job."""
    if kind == MediaKind.IMAGE:
        return classify_image_priority(size, operation_count)
    return classify_video_priority(size, estimated_duration)


def estimate_video_duration(size: int) -> float:
    """Rough duration guess when ffprobe is unavailable: about a megabyte per second."""
    return float(max(1, size // MB))


def estimate_image_processing_time(size: int, plan: OperationPlan) -> str:
    """Human readable range such as ``"4-9 seconds"``."""
    base = max(2, math.ceil(size / MB))
    for op in plan.operations:
        if isinstance(op, Resize):
            base += 2
        elif isinstance(op, (Crop, Rotate)):
            base += 1
        elif isinstance(op, Blur):
            base += 2
        elif isinstance(op, Encode) and op.format == "avif":
            base += 3
    return f"{base}-{base + 5} seconds"


def estimate_video_processing_time(size: int, duration: float, plan: OperationPlan) -> str:
    """Estimated wall time formatted as seconds, minutes or hours."""
    seconds = max(30.0, duration * 2)
    for op in plan.operations:
        if isinstance(op, Trim):
            seconds += 15
        elif isinstance(op, (TextWatermark, ImageWatermark)):
            seconds += 20
    seconds *= min(max(size / VIDEO_SMALL_FILE_THRESHOLD, 0.5), 3.0)

    total = int(round(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3600:
        return f"{math.ceil(total / 60)}m"
    return f"{total / 3600:.1f}h"
