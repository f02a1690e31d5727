"""
Job lifecycle events.

Workers publish one event per lifecycle step. Listeners are called in
registration order; a failing listener is logged and never affects the
job it was told about.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from media_pipeline.core.models import CleanupReason, ProcessingResult, utcnow
from media_pipeline.core.operations import MediaKind

logger = logging.getLogger(__name__)

EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_COMPLETED = "completed"
EVENT_RETRYING = "retrying"
EVENT_FAILED = "failed"


@dataclass(frozen=True)
class JobEvent:
    job_id: str
    kind: MediaKind
    timestamp: datetime = field(default_factory=utcnow, kw_only=True)

    type = "event"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type
        data["kind"] = self.kind.value
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class JobStarted(JobEvent):
    attempt: int = 1

    type = EVENT_STARTED


@dataclass(frozen=True)
class JobProgressed(JobEvent):
    progress: int = 0

    type = EVENT_PROGRESS


@dataclass(frozen=True)
class JobCompleted(JobEvent):
    result: Optional[ProcessingResult] = None

    type = EVENT_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["result"] = self.result.model_dump(mode="json") if self.result else None
        return data


@dataclass(frozen=True)
class JobRetrying(JobEvent):
    attempt: int = 1
    delay: float = 0.0
    code: str = ""
    reason: str = ""

    type = EVENT_RETRYING


@dataclass(frozen=True)
class JobFailed(JobEvent):
    code: str = ""
    reason: str = ""
    cleanup_reason: Optional[CleanupReason] = None

    type = EVENT_FAILED


class JobEventListener(Protocol):
    async def __call__(self, event: JobEvent) -> None:
        ...


class LoggingEventListener:
    """Writes every event to the application log."""

    def __init__(self, name: str):
        self.name = name

    async def __call__(self, event: JobEvent) -> None:
        if isinstance(event, JobFailed):
            logger.error("[%s] Job %s failed: %s (%s)", self.name, event.job_id, event.reason, event.code)
        elif isinstance(event, JobRetrying):
            logger.warning(
                "[%s] Job %s attempt %d failed, retrying in %.0fs: %s",
                self.name, event.job_id, event.attempt, event.delay, event.reason,
            )
        elif isinstance(event, JobCompleted):
            logger.info("[%s] Job %s completed", self.name, event.job_id)
        elif isinstance(event, JobStarted):
            logger.info("[%s] Job %s started (attempt %d)", self.name, event.job_id, event.attempt)
        else:
            logger.debug("[%s] Job %s %s", self.name, event.job_id, event.type)


class EventEmitter:
    def __init__(self, listeners: Optional[List[JobEventListener]] = None):
        self._listeners: List[JobEventListener] = list(listeners or [])

    def subscribe(self, listener: JobEventListener) -> None:
        self._listeners.append(listener)

    async def emit(self, event: JobEvent) -> None:
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception as e:
                logger.warning(f"Event listener failed on {event.type} for job {event.job_id}: {e}")
