"""
Job workers: fault classification, lifecycle events, the per-attempt
processor and the concurrent worker pool.
"""

from media_pipeline.core.worker.classification import classify_fault
from media_pipeline.core.worker.events import (
    EventEmitter,
    JobCompleted,
    JobEvent,
    JobEventListener,
    JobFailed,
    JobProgressed,
    JobRetrying,
    JobStarted,
    LoggingEventListener,
)
from media_pipeline.core.worker.pool import WorkerPool
from media_pipeline.core.worker.processor import JobProcessor

__all__ = [
    "classify_fault",
    # Events
    "EventEmitter",
    "JobCompleted",
    "JobEvent",
    "JobEventListener",
    "JobFailed",
    "JobProgressed",
    "JobRetrying",
    "JobStarted",
    "LoggingEventListener",
    # Execution
    "JobProcessor",
    "WorkerPool",
]
