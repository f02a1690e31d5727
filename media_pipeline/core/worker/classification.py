"""
Map arbitrary exceptions from an attempt onto pipeline faults.

Pipeline faults pass through untouched. Anything else is classified by
type; an exception nobody anticipated is treated as an environment
problem and retried, bounded by the job's attempt budget.
"""

import asyncio
import subprocess

from media_pipeline.core.errors import (
    EngineFault,
    ErrorCode,
    FaultKind,
    MediaPipelineError,
    MissingInputFault,
    ResourceExhaustionFault,
    TimeoutFault,
    TransientIOFault,
)


def classify_fault(exc: BaseException) -> MediaPipelineError:
    if isinstance(exc, MediaPipelineError):
        return exc
    if isinstance(exc, FileNotFoundError):
        return MissingInputFault(f"File not found: {exc.filename or exc}")
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, subprocess.TimeoutExpired)):
        return TimeoutFault(f"Processing timed out: {exc}" if str(exc) else "Processing timed out")
    if isinstance(exc, MemoryError):
        return ResourceExhaustionFault("Out of memory")
    if isinstance(exc, OSError):
        return TransientIOFault(f"I/O error: {exc}")
    return EngineFault(
        f"{type(exc).__name__}: {exc}",
        FaultKind.ENVIRONMENT,
        ErrorCode.INTERNAL_ERROR,
    )
